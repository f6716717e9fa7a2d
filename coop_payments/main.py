import logging

from fastapi import FastAPI

from coop_payments.config import log_level
from coop_payments.database import Base, engine
from coop_payments import models  # noqa: F401  registers the tables on Base
from coop_payments.routes import router as payments_router
from coop_payments.callbacks import router as nicepay_router

logging.basicConfig(
    level=log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Cooperative Enrollment Payments")

app.include_router(payments_router)
app.include_router(nicepay_router)

Base.metadata.create_all(bind=engine)
