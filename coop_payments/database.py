from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from coop_payments.config import database_url

DATABASE_URL = database_url()

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


def get_db():
    """One session per request; handlers never build their own."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
