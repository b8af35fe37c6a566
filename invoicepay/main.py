from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

# Import database components
from invoicepay.database.database import engine, Base

# Import routers
from invoicepay.modules.invoices.router import router as invoices_router, payment_link_router
from invoicepay.modules.payments.router import router as payments_router
from invoicepay.modules.webhooks.router import router as webhooks_router

# Import models for table creation
import invoicepay.modules.merchants.models
import invoicepay.modules.invoices.models

from invoicepay.common.exceptions import PaymentError
from invoicepay.core.config import settings
from invoicepay.modules.notifications.service import PaymentNotifier
from invoicepay.modules.webhooks.audit import build_audit_log

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="InvoicePay API",
    description="Invoice payment collection over card and crypto rails",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One audit log and one notifier per process
app.state.webhook_audit_log = build_audit_log()
app.state.payment_notifier = PaymentNotifier()


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error_code}: {exc.message} {exc.context}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Include routers
app.include_router(payment_link_router)
app.include_router(invoices_router)
app.include_router(payments_router)
app.include_router(webhooks_router)

# Create database tables (only for development - use migrations in production)
if settings.ENVIRONMENT == "development":
    Base.metadata.create_all(bind=engine)


@app.get("/")
async def read_root():
    return {
        "message": "InvoicePay API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("InvoicePay API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Webhook audit backend: {settings.WEBHOOK_AUDIT_BACKEND}")
    if not settings.CARD_WEBHOOK_SIGNING_KEY:
        logger.warning("CARD_WEBHOOK_SIGNING_KEY is not set; card webhooks will fail verification")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("InvoicePay API shutting down...")
