from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session

from booking_engine.application.payment_service import PaymentService
from booking_engine.config import settings
from booking_engine.infrastructure.db.session import SessionLocal
from booking_engine.infrastructure.payments.sslcommerz_gateway import SSLCommerzGateway
from booking_engine.infrastructure.payments.stripe_gateway import StripeGateway


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@lru_cache()
def get_stripe_gateway() -> StripeGateway:
    return StripeGateway(
        secret_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        max_network_retries=settings.PROVIDER_MAX_RETRIES,
    )


@lru_cache()
def get_sslcommerz_gateway() -> SSLCommerzGateway:
    return SSLCommerzGateway(
        store_id=settings.SSLCOMMERZ_STORE_ID,
        store_password=settings.SSLCOMMERZ_STORE_PASSWORD,
        base_url=settings.SSLCOMMERZ_BASE_URL,
        callback_base_url=settings.SSLCOMMERZ_CALLBACK_BASE_URL,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        max_retries=settings.PROVIDER_MAX_RETRIES,
        backoff_seconds=settings.PROVIDER_RETRY_BACKOFF_SECONDS,
    )


def get_payment_service(
    db: Session = Depends(get_db),
    stripe_gateway: StripeGateway = Depends(get_stripe_gateway),
    sslcommerz_gateway: SSLCommerzGateway = Depends(get_sslcommerz_gateway),
) -> PaymentService:
    return PaymentService(
        db,
        stripe_gateway=stripe_gateway,
        sslcommerz_gateway=sslcommerz_gateway,
    )
