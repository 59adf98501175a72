import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from coursepay.config import load_settings
from coursepay.errors import (
    GatewayUnauthorized,
    InvalidSignature,
    OrderNotFound,
    OrderValidationError,
    PaymentError,
)
from coursepay.logging_config import setup_logging
from coursepay.routes import http_error, router
from coursepay.service import build_service

log = logging.getLogger(__name__)


def create_app(settings=None, service=None) -> FastAPI:
    """
    Builds the application. Settings come from the environment unless given;
    the service (database + gateway handles) is opened at startup and closed
    at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = settings or load_settings()
        setup_logging(app.state.settings.log_level)
        app.state.service = service or build_service(app.state.settings)
        log.info("Payment service started.")
        try:
            yield
        finally:
            app.state.service.close()
            log.info("Payment service stopped.")

    app = FastAPI(title="Course Payment Service", lifespan=lifespan)
    app.include_router(router)

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.post("/webhook")
    async def gateway_webhook(request: Request, x_razorpay_signature: str = Header(None)):
        payload = await request.body()

        try:
            result = await run_in_threadpool(
                request.app.state.service.handle_webhook, payload, x_razorpay_signature
            )
        except InvalidSignature:
            raise HTTPException(status_code=400, detail="Invalid signature")
        except OrderValidationError:
            raise HTTPException(status_code=400, detail="Invalid payload")
        except OrderNotFound:
            # not one of ours; acknowledge so the gateway stops redelivering
            return {"ok": True}
        except PaymentError as e:
            if e.retryable or isinstance(e, GatewayUnauthorized):
                raise http_error(e)
            # redelivery cannot change the outcome; acknowledge and leave the order as is
            log.warning(f"Webhook not settled: {type(e).__name__}: {e}")
            return {"ok": True, "settled": False}

        if result is None:
            return {"ok": True}
        return {"ok": True, "already_existed": result.already_existed}

    return app


app = create_app()
