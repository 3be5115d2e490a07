import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from the working directory .env
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from savepad.core.config import settings, validate_config, cors_origins
from savepad.core.logging import configure_logging
from savepad.core.middleware.request_id import RequestIdMiddleware
from savepad.core.validation import validate_env
from savepad.core.database import Database
from savepad.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from savepad.api import auth, billing, family, health, users, whatsapp
from savepad.api.deps import build_services
from savepad.features.billing.mercadopago_provider import MercadoPagoProvider
from savepad.features.billing.provider import PaymentProvider, PaymentProviderError
from savepad.features.notifications.bot import BotNotifier, Notifier

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

logger = logging.getLogger("savepad")


def _default_provider() -> Optional[PaymentProvider]:
    try:
        return MercadoPagoProvider()
    except PaymentProviderError as e:
        logger.warning(f"Mercado Pago disabled: {e}")
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting SavePad API...")
    app.state.services.db.create_all()
    try:
        yield
    finally:
        logger.info("Stopping SavePad API...")


def create_app(
    database: Optional[Database] = None,
    provider: Optional[PaymentProvider] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """Build the API with its services wired once.

    Tests pass an in-memory Database, a mocked provider and a recording notifier.
    """
    db = database or Database()
    app = FastAPI(title="SavePad API", lifespan=lifespan)
    app.state.services = build_services(
        db,
        provider if provider is not None else _default_provider(),
        notifier if notifier is not None else BotNotifier(settings.BOT_URL),
        base_url=settings.BASE_URL,
        currency=settings.PLAN_CURRENCY,
        webhook_secret=settings.MERCADO_PAGO_WEBHOOK_SECRET,
    )

    # Middlewares
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins(),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.root_router)
    app.include_router(auth.router)
    app.include_router(billing.router)
    app.include_router(family.router)
    app.include_router(whatsapp.router)
    app.include_router(users.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("savepad.main:app", host="0.0.0.0", port=settings.PORT, log_level="info")
