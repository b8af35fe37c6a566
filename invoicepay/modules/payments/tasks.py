"""
Celery tasks for the payments module
"""
from invoicepay.core.celery import celery_app
from invoicepay.core.config import settings
from invoicepay.database.database import SessionLocal
from invoicepay.modules.notifications.service import PaymentNotifier
from invoicepay.modules.payments.gateway.crypto import CryptoGatewayClient
from invoicepay.modules.payments.service import poll_pending_crypto_payments
import logging

logger = logging.getLogger(__name__)


@celery_app.task(name="invoicepay.modules.payments.tasks.poll_pending_crypto_payments_task")
def poll_pending_crypto_payments_task():
    """Confirm pending crypto payments that the provider webhook may have missed."""
    db = SessionLocal()
    try:
        return poll_pending_crypto_payments(
            db, CryptoGatewayClient(), PaymentNotifier(), batch_size=settings.CRYPTO_POLL_BATCH_SIZE
        )
    except Exception as e:
        logger.error(f"Crypto payment poll failed: {str(e)}")
        raise
    finally:
        db.close()
