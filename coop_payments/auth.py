from fastapi import Header, HTTPException
from jose import jwt, JWTError

from coop_payments.config import jwt_secret


def get_current_user_id(authorization: str = Header(None)) -> str:
    """Return the signed-in user's id (the token's ``sub`` claim)."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("unsupported auth scheme")
        claims = jwt.decode(
            token,
            jwt_secret(),
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return user_id
