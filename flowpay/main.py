import os

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from flowpay.config import settings
from flowpay.database import Base, engine, get_db
from flowpay.logging_config import get_logger, setup_logging
from flowpay.models import Product, Sale, Tenant, User
from flowpay.routers import cron, payment_webhook, telegram_webhook, whatsapp_webhook

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Flowpay API",
    description="Multi-tenant chatbot flows with payment reconciliation",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(telegram_webhook.router)
app.include_router(whatsapp_webhook.router)
app.include_router(cron.router)
# Tenant webhook path is a catch-all on its first segment, keep it last
app.include_router(payment_webhook.router)


@app.on_event("startup")
def create_tables() -> None:
    if not settings.auto_create_tables:
        return
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {
        "status": "ok",
        "tenants": db.query(Tenant).count(),
        "products": db.query(Product).count(),
        "sales": db.query(Sale).count(),
        "users": db.query(User).count(),
    }
