import hmac
import logging
from typing import Optional

from fastapi import FastAPI, Request, Query
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from config import Settings, ConfigurationError
from database import crud
from database import session as db_session
from email_utils import MailerSendNotifier
from fulfillment import FulfillmentPipeline, FulfillmentState, InvalidPayloadError
from giftcard_client import build_giftcard_issuer
from shopify_client import ShopifyClient, StaticAccessTokenProvider, CommerceError

# ------------------------------------------------------------------------------
# Konfiguracja logowania
# ------------------------------------------------------------------------------

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("giftcard-webhook")

SIGNATURE_HEADER = "X-Shopify-Hmac-Sha256"

# Krótkie teksty odpowiedzi dla nadawcy webhooka
_STATUS_TEXT = {
    FulfillmentState.DONE: "OK",
    FulfillmentState.ALREADY_DONE: "Already sent",
    FulfillmentState.NO_RECIPIENT: "No customer email",
    FulfillmentState.NO_ELIGIBLE_ITEMS: "No eligible items",
    FulfillmentState.REJECTED_AUTH: "Invalid webhook signature",
    FulfillmentState.ISSUANCE_FAILED: "Gift card issuance failed",
    FulfillmentState.NOTIFICATION_FAILED: "Email delivery failed",
    FulfillmentState.PROOF_FAILED: "Codes sent but fulfillment not recorded",
}


def build_pipeline(settings: Settings) -> FulfillmentPipeline:
    """Składa pipeline z konfiguracji – wszystkie klienty dostają jawne ustawienia."""
    commerce = ShopifyClient(
        shop=settings.shopify_shop,
        token_provider=StaticAccessTokenProvider(settings.shopify_access_token),
        api_version=settings.shopify_api_version,
        timeout=settings.http_timeout,
    )
    notifier = MailerSendNotifier(
        api_key=settings.mailersend_api_key,
        from_email=settings.email_from,
        from_name=settings.email_from_name,
        timeout=settings.http_timeout,
    )
    return FulfillmentPipeline(
        webhook_secret=settings.shopify_webhook_secret,
        commerce=commerce,
        issuer=build_giftcard_issuer(settings),
        notifier=notifier,
        currency_token=settings.giftcard_token,
    )


def create_app(
    pipeline: Optional[FulfillmentPipeline] = None,
    config_error: Optional[str] = None,
    admin_token: Optional[str] = None,
) -> FastAPI:
    """
    Buduje aplikację FastAPI.

    Bez pipeline'u (błąd konfiguracji) webhook odpowiada 500 – Shopify ponowi
    dostarczenie, gdy operator poprawi konfigurację.
    """
    app = FastAPI(title="BNGC Giftcard Webhook")
    app.state.pipeline = pipeline
    app.state.config_error = config_error

    # --------------------------------------------------------------------------
    # Webhook z Shopify
    # --------------------------------------------------------------------------

    @app.post("/webhooks/orders_paid")
    async def orders_paid_webhook(request: Request):
        """
        Webhook orders/paid. Body czytamy jako surowe bajty – podpis HMAC
        liczony jest po dokładnie tych bajtach, przed parsowaniem JSON.
        """
        pipeline: Optional[FulfillmentPipeline] = request.app.state.pipeline
        if pipeline is None:
            logger.error(
                "Webhook odrzucony – brak konfiguracji: %s",
                request.app.state.config_error,
            )
            return PlainTextResponse(
                request.app.state.config_error or "Server misconfigured",
                status_code=500,
            )

        raw_body = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)

        try:
            result = await run_in_threadpool(pipeline.handle_webhook, raw_body, signature)
        except InvalidPayloadError as e:
            logger.error("Nieprawidłowy payload webhooka: %s", e)
            await run_in_threadpool(crud.log_webhook_event, status="bad_request", message=str(e))
            return PlainTextResponse("Invalid payload", status_code=400)
        except CommerceError as e:
            logger.error("Błąd Shopify podczas obsługi webhooka: %s", e)
            await run_in_threadpool(crud.log_webhook_event, status="commerce_error", message=str(e))
            return PlainTextResponse("Commerce platform error", status_code=500)

        if result.state == FulfillmentState.REJECTED_AUTH:
            return PlainTextResponse(_STATUS_TEXT[result.state], status_code=401)

        await run_in_threadpool(
            crud.log_webhook_event,
            status=result.state.value,
            message=result.message,
            order_id=result.order_id,
            order_name=result.order_name,
            codes_issued=result.codes_issued,
            masked_references=result.masked_references,
        )

        status_code = 200 if result.ok else 500
        return PlainTextResponse(_STATUS_TEXT.get(result.state, result.state.value), status_code=status_code)

    # --------------------------------------------------------------------------
    # Endpointy pomocnicze
    # --------------------------------------------------------------------------

    @app.get("/", response_class=PlainTextResponse)
    def root():
        return PlainTextResponse("BNGC server is running")

    @app.get("/health")
    def health_check():
        """
        Sprawdzenie:
        - czy konfiguracja przeszła walidację
        - połączenia z DB (jeśli skonfigurowana)
        """
        configured = app.state.pipeline is not None
        db_configured = db_session.SessionLocal is not None
        db_ok = False

        if db_configured:
            db = db_session.SessionLocal()
            try:
                db.execute(text("SELECT 1"))
                db_ok = True
            except SQLAlchemyError as e:
                logger.exception("Healthcheck DB failed: %s", e)
            finally:
                db.close()

        healthy = configured and (db_ok or not db_configured)

        return JSONResponse(
            {
                "configured": configured,
                "database_configured": db_configured,
                "database": db_ok,
            },
            status_code=200 if healthy else 503,
        )

    @app.get("/admin/api/logs")
    def admin_list_logs(
        request: Request,
        limit: int = Query(50, ge=1, le=500),
        order_id: Optional[str] = Query(None),
    ):
        """
        Ostatnie wpisy logu webhooków. Wymaga nagłówka Authorization: Bearer <ADMIN_API_TOKEN>.
        """
        if not admin_token:
            return JSONResponse({"detail": "Not found"}, status_code=404)

        auth = request.headers.get("Authorization") or ""
        if not hmac.compare_digest(auth.encode("utf-8"), f"Bearer {admin_token}".encode("utf-8")):
            return JSONResponse({"detail": "Unauthorized"}, status_code=401)

        events = crud.list_webhook_events(limit=limit, order_id=order_id)
        return {
            "items": [
                {
                    "id": e.id,
                    "event_type": e.event_type,
                    "status": e.status,
                    "message": e.message,
                    "order_id": e.order_id,
                    "order_name": e.order_name,
                    "codes_issued": e.codes_issued,
                    "reference_nos": e.reference_nos.split("\n") if e.reference_nos else [],
                    "created_at": e.created_at.isoformat() if e.created_at else None,
                }
                for e in events
            ]
        }

    return app


# ------------------------------------------------------------------------------
# Inicjalizacja aplikacji z konfiguracji środowiska
# ------------------------------------------------------------------------------


def _create_app_from_env() -> FastAPI:
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        logger.error("Błąd konfiguracji – webhook będzie odpowiadał 500: %s", e)
        return create_app(config_error=str(e))

    if settings.database_url:
        db_session.init_db(settings.database_url)
        logger.info("Log audytu webhooków zapisywany w bazie danych.")
    else:
        logger.warning("Brak DATABASE_URL – log audytu webhooków wyłączony.")

    pipeline = build_pipeline(settings)
    logger.info(
        "Pipeline zainicjalizowany (sandbox=%s, token=%s).",
        settings.giftcard_sandbox,
        settings.giftcard_token,
    )
    return create_app(pipeline=pipeline, admin_token=settings.admin_api_token)


app = _create_app_from_env()
