import logging
from contextlib import asynccontextmanager
from typing import Annotated, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException

from optout_gate.config import Settings, get_settings
from optout_gate.consent import API, MANUAL
from optout_gate.errors import UpstreamTransportError, ValidationError, register_exception_handlers, require_fields
from optout_gate.inbound import InboundOutcome
from optout_gate.logging_utils import RecentLogBuffer, RequestLoggingMiddleware, log_inbound_data, setup_logging
from optout_gate.metrics import get_metrics, get_metrics_content_type, record_inbound_outcome
from optout_gate.schemas import (
    BulkNumbersRequest,
    BulkSendersRequest,
    BulkSendRequest,
    CheckResponse,
    ConfigDocument,
    ConfigRequest,
    CredentialsRequest,
    CustomSender,
    HealthResponse,
    HistoryEntry,
    LogEntry,
    NumberRequest,
    OptOutConfig,
    OptOutEntry,
    SendRequest,
    SendResponse,
    SenderRequest,
    StatsResponse,
    SuccessResponse,
)
from optout_gate.services import Services, build_services, get_services
from optout_gate.storage import check_db_health
from optout_gate.transport import TransportError
from optout_gate.utils import normalize_number, now_iso

logger = logging.getLogger(__name__)

router = APIRouter()

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


async def read_payload(request: Request) -> dict:
    """
    Collect request fields from the query string and, for POST, the body.

    Providers send webhooks as query strings (GET), JSON or form posts;
    SDK clients of the SMS API post forms. Body fields win over query
    fields. An unreadable body yields only the query fields.
    """
    payload = dict(request.query_params)
    if request.method != "POST":
        return payload

    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith(FORM_CONTENT_TYPES):
            form = await request.form()
            payload.update({k: v for k, v in form.items() if isinstance(v, str)})
        elif await request.body():
            data = await request.json()
            if isinstance(data, dict):
                payload.update(data)
    except (ValueError, HTTPException) as e:
        logger.warning(f"Unreadable {content_type or 'untyped'} body on {request.url.path}: {e}")
    return payload


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/_/health", response_model=HealthResponse, response_model_exclude_none=True)
async def health() -> HealthResponse:
    return HealthResponse(status="ok", timestamp=now_iso())


@router.get("/health/live", response_model=HealthResponse, response_model_exclude_none=True)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse, response_model_exclude_none=True)
async def health_ready(response: Response, services: Services = Depends(get_services)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the database is reachable and
    the schema is applied, otherwise 503.
    """
    if not check_db_health(services.session_factory):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )
    return HealthResponse(status="ready")


@router.get("/api/storage-status")
async def storage_status(services: Services = Depends(get_services)) -> dict:
    """Where records are stored and how many of each are held."""
    description = services.records.describe()
    document = services.registry.get_document()
    persistent = description["persistent"]
    return {
        "storageType": " + ".join(description["backends"]),
        "persistent": persistent,
        "degraded": description["degraded"],
        "data": {
            "configurations": len(document.optout_configs),
            "customSenders": len(document.custom_senders),
            "optedOutNumbers": len(services.consent),
            "historyEntries": len(services.history),
        },
        "message": (
            "Data is persisted and will survive restarts"
            if persistent
            else "A write failed; changes since then live in memory only"
        ),
    }


# =============================================================================
# Logs Routes
# =============================================================================

@router.get("/api/logs", response_model=list[LogEntry])
async def list_logs(services: Services = Depends(get_services)) -> list[dict]:
    return services.log_buffer.entries()


@router.delete("/api/logs", response_model=SuccessResponse)
async def clear_logs(services: Services = Depends(get_services)) -> SuccessResponse:
    services.log_buffer.clear()
    logger.info("Logs cleared")
    return SuccessResponse()


# =============================================================================
# Credentials Routes
# =============================================================================

@router.get("/api/credentials")
async def get_credentials(services: Services = Depends(get_services)) -> dict:
    """Active credentials; the secret is masked while they are locked."""
    return services.credentials.masked()


@router.post("/api/credentials", response_model=SuccessResponse)
async def save_credentials(
    body: CredentialsRequest,
    services: Services = Depends(get_services)
) -> SuccessResponse:
    """Save and lock credentials. Rejected when they come from the environment."""
    services.credentials.save(body.api_key, body.api_secret)
    return SuccessResponse()


@router.post("/api/credentials/unlock")
async def unlock_credentials(services: Services = Depends(get_services)) -> dict:
    credentials = services.credentials.unlock()
    return {"success": True, "apiKey": credentials.api_key, "apiSecret": credentials.api_secret}


# =============================================================================
# Config Routes (legacy document API)
# =============================================================================

@router.get("/api/config", response_model=ConfigDocument)
async def get_config_document(services: Services = Depends(get_services)) -> ConfigDocument:
    return services.registry.get_document()


@router.post("/api/config", response_model=SuccessResponse)
async def replace_config_document(
    body: ConfigDocument,
    services: Services = Depends(get_services)
) -> SuccessResponse:
    services.registry.replace_document(body)
    return SuccessResponse()


@router.post("/api/config/add")
async def add_config_legacy(body: ConfigRequest, services: Services = Depends(get_services)) -> dict:
    config = services.registry.add_config(body.optout_number, body.optout_phrase, body.optin_phrase)
    return {"success": True, "config": config}


@router.put("/api/config/{config_id}", response_model=SuccessResponse)
async def update_config_legacy(
    config_id: str,
    body: ConfigRequest,
    services: Services = Depends(get_services)
) -> SuccessResponse:
    services.registry.update_config(config_id, body.optout_number, body.optout_phrase, body.optin_phrase)
    return SuccessResponse()


@router.delete("/api/config/{config_id}", response_model=SuccessResponse)
async def delete_config_legacy(config_id: str, services: Services = Depends(get_services)) -> SuccessResponse:
    services.registry.delete_config(config_id)
    return SuccessResponse()


# =============================================================================
# Configs Routes
# =============================================================================

@router.get("/api/configs", response_model=list[OptOutConfig])
async def list_configs(services: Services = Depends(get_services)) -> list[OptOutConfig]:
    return services.registry.list_configs()


@router.post("/api/configs")
async def add_config(body: ConfigRequest, services: Services = Depends(get_services)) -> dict:
    """
    Bind opt-out/opt-in phrases to a receiving number.

    Phrases default to STOP / START. A number may only be configured once.
    """
    config = services.registry.add_config(body.optout_number, body.optout_phrase, body.optin_phrase)
    return {"success": True, "config": config}


@router.put("/api/configs/{config_id}")
async def update_config(
    config_id: str,
    body: ConfigRequest,
    services: Services = Depends(get_services)
) -> dict:
    config = services.registry.update_config(config_id, body.optout_number, body.optout_phrase, body.optin_phrase)
    return {"success": True, "config": config}


@router.delete("/api/configs/{config_id}", response_model=SuccessResponse)
async def delete_config(config_id: str, services: Services = Depends(get_services)) -> SuccessResponse:
    services.registry.delete_config(config_id)
    return SuccessResponse()


# =============================================================================
# Custom Senders Routes
# =============================================================================

@router.get("/api/senders", response_model=list[CustomSender])
async def list_senders(services: Services = Depends(get_services)) -> list[CustomSender]:
    return services.registry.list_senders()


@router.post("/api/senders")
async def add_sender(body: SenderRequest, services: Services = Depends(get_services)) -> dict:
    sender = services.registry.add_sender(body.sender_id, body.description)
    return {"success": True, "sender": sender}


@router.post("/api/senders/bulk")
async def add_senders_bulk(body: BulkSendersRequest, services: Services = Depends(get_services)) -> dict:
    if not body.senders:
        raise ValidationError("Missing or invalid senders array")
    results = services.registry.add_senders_bulk(body.senders)
    return {
        "success": True,
        "summary": {
            "total": len(body.senders),
            "added": len(results["added"]),
            "failed": len(results["failed"]),
        },
        "results": results,
    }


@router.delete("/api/senders/{sender_id}", response_model=SuccessResponse)
async def delete_sender(sender_id: str, services: Services = Depends(get_services)) -> SuccessResponse:
    services.registry.delete_sender(sender_id)
    return SuccessResponse()


@router.get("/api/numbers")
async def list_numbers(services: Services = Depends(get_services)) -> list[dict]:
    """
    Sending numbers owned by the account followed by the custom senders.

    Without configured credentials only the custom senders are listed.
    """
    custom = [
        {
            "msisdn": sender.sender_id,
            "country": "ALPHA",
            "type": "alphanumeric",
            "features": ["SMS"],
            "isCustom": True,
        }
        for sender in services.registry.list_senders()
    ]

    credentials = services.credentials.get()
    if not credentials.configured:
        return custom

    try:
        numbers = await services.transport.account_numbers(credentials.api_key, credentials.api_secret)
    except TransportError as e:
        raise UpstreamTransportError(str(e)) from e
    return numbers + custom


# =============================================================================
# Send Routes
# =============================================================================

@router.get("/api/check/{number}", response_model=CheckResponse)
async def check_number(number: str, services: Services = Depends(get_services)) -> CheckResponse:
    normalized = normalize_number(number)
    return CheckResponse(number=normalized, blocked=services.consent.is_blocked(normalized))


@router.post(
    "/api/send",
    response_model=SendResponse,
    responses={
        400: {"description": "Missing fields, credentials or provider refusal"},
        403: {"description": "Recipient opted out"},
    }
)
async def send_sms(body: SendRequest, services: Services = Depends(get_services)) -> SendResponse:
    """
    Send one SMS after checking the opt-out list.

    Opted-out recipients get 403 and the SMS API is not called.
    """
    result = await services.gate.send(services.credentials.get(), body.to, body.from_, body.text)
    return SendResponse(to=result.to, message_id=result.message_id)


@router.post("/api/send/bulk")
async def send_sms_bulk(body: BulkSendRequest, services: Services = Depends(get_services)) -> dict:
    """
    Send one SMS to many recipients, sequentially and rate limited.

    Response:
        - summary: total / sent / blocked / failed counts
        - results: per-recipient outcome lists
    """
    report = await services.gate.send_bulk(services.credentials.get(), body.recipients, body.from_, body.text)
    return report.to_dict()


@router.post("/sms/json")
async def sms_api_shim(request: Request, services: Services = Depends(get_services)) -> JSONResponse:
    """
    Drop-in replacement for the provider's /sms/json endpoint.

    Accepts the provider's request format (JSON or form, credentials in the
    body) so existing SDK clients only change their base URL. Opted-out
    recipients get status "99"; otherwise the provider's response is
    returned verbatim. Always answers 200, as the provider does.
    """
    payload = await read_payload(request)
    data = await services.gate.relay(payload, services.credentials.get())
    return JSONResponse(content=data)


# =============================================================================
# Webhook Routes
# =============================================================================

@router.api_route("/webhooks/inbound-sms", methods=["GET", "POST"], response_class=PlainTextResponse)
async def inbound_sms(request: Request, services: Services = Depends(get_services)) -> PlainTextResponse:
    """
    Inbound SMS from the provider (query string, JSON or form).

    Always acknowledged with 200 so the provider does not retry; the
    outcome only shows up in logs and metrics.
    """
    logger.info(f"WEBHOOK {request.method} /webhooks/inbound-sms received")
    try:
        payload = await read_payload(request)
        outcome = services.inbound.handle(payload)
    except Exception:
        logger.exception("Inbound SMS processing failed")
        outcome = InboundOutcome(result="error")

    record_inbound_outcome(outcome.result)
    log_inbound_data(request, number=outcome.number, action=outcome.action, result=outcome.result)
    return PlainTextResponse("OK")


@router.api_route("/webhooks/status", methods=["GET", "POST"], response_class=PlainTextResponse)
async def delivery_status(request: Request) -> PlainTextResponse:
    """Delivery receipts are logged only."""
    try:
        payload = await read_payload(request)
        logger.info(f"Delivery receipt: {payload}")
    except Exception:
        logger.exception("Delivery receipt processing failed")
    return PlainTextResponse("OK")


# =============================================================================
# Opt-out Routes
# =============================================================================

@router.get("/api/optouts", response_model=list[str])
async def list_optouts(services: Services = Depends(get_services)) -> list[str]:
    """Opted-out numbers only, in normalized form."""
    return services.consent.numbers()


@router.post("/api/optout")
async def manual_optout(body: NumberRequest, services: Services = Depends(get_services)) -> dict:
    require_fields(number=body.number)
    number = normalize_number(body.number)
    if not number:
        raise ValidationError(f"Invalid number: {body.number}")

    added = services.consent.add(OptOutEntry(number=number, config_id=MANUAL, original_number=str(body.number)))
    if added:
        services.history.append(HistoryEntry(
            number=number, action="optout", timestamp=now_iso(), received_on=MANUAL
        ))
    return {"success": True, "number": number, "added": added}


@router.post("/api/optin")
async def manual_optin(body: NumberRequest, services: Services = Depends(get_services)) -> dict:
    require_fields(number=body.number)
    number = normalize_number(body.number)
    if not number:
        raise ValidationError(f"Invalid number: {body.number}")

    removed = services.consent.remove(number)
    if removed:
        services.history.append(HistoryEntry(
            number=number, action="optin", timestamp=now_iso(), received_on=MANUAL
        ))
    return {"success": True, "number": number, "removed": removed}


@router.post("/api/optout/bulk")
async def bulk_optout(body: BulkNumbersRequest, services: Services = Depends(get_services)) -> dict:
    """
    Opt out many numbers at once.

    Differently formatted copies of the same number are stored once; the
    repeats are reported as alreadyBlocked. Numbers without digits are
    reported as invalid.
    """
    if not body.numbers:
        raise ValidationError("Missing or invalid numbers array")

    invalid = [str(n) for n in body.numbers if not normalize_number(n)]
    added, already_blocked = services.consent.add_many(
        OptOutEntry(number=normalize_number(n), config_id=API, original_number=str(n))
        for n in body.numbers
    )
    timestamp = now_iso()
    services.history.extend(
        HistoryEntry(number=n, action="optout", timestamp=timestamp, received_on=API) for n in added
    )
    logger.info(f"Bulk opt-out: added {len(added)} numbers via API")

    return {
        "success": True,
        "summary": {
            "total": len(body.numbers),
            "added": len(added),
            "alreadyBlocked": len(already_blocked),
            "invalid": len(invalid),
        },
        "results": {"added": added, "alreadyBlocked": already_blocked, "invalid": invalid},
    }


@router.post("/api/optin/bulk")
async def bulk_optin(body: BulkNumbersRequest, services: Services = Depends(get_services)) -> dict:
    if not body.numbers:
        raise ValidationError("Missing or invalid numbers array")

    invalid = [str(n) for n in body.numbers if not normalize_number(n)]
    removed, not_found = services.consent.remove_many(body.numbers)
    timestamp = now_iso()
    services.history.extend(
        HistoryEntry(number=n, action="optin", timestamp=timestamp, received_on=API) for n in removed
    )
    logger.info(f"Bulk opt-in: removed {len(removed)} numbers via API")

    return {
        "success": True,
        "summary": {
            "total": len(body.numbers),
            "removed": len(removed),
            "notFound": len(not_found),
            "invalid": len(invalid),
        },
        "results": {"removed": removed, "notFound": not_found, "invalid": invalid},
    }


# =============================================================================
# History Routes
# =============================================================================

@router.get("/api/stats", response_model=StatsResponse)
async def get_statistics(services: Services = Depends(get_services)) -> StatsResponse:
    """Opt-ins and opt-outs over the last 24 hours."""
    return StatsResponse(**services.history.stats(window_hours=24))


@router.get("/api/history", response_model=list[HistoryEntry], response_model_exclude_none=True)
async def get_history(
    start_date: Annotated[Optional[str], Query(alias="startDate", description="First day, inclusive (YYYY-MM-DD)")] = None,
    end_date: Annotated[Optional[str], Query(alias="endDate", description="Last day, inclusive (YYYY-MM-DD)")] = None,
    action: Annotated[Optional[str], Query(description="optin, optout or all")] = None,
    services: Services = Depends(get_services)
) -> list[HistoryEntry]:
    """History filtered by UTC day range and action, newest first."""
    return services.history.query(start_date, end_date, action)


@router.delete("/api/history", response_model=SuccessResponse)
async def clear_history(services: Services = Depends(get_services)) -> SuccessResponse:
    services.history.clear()
    return SuccessResponse()


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Application
# =============================================================================

def create_app(settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use; defaults to the environment
        http_client: Pre-built client for the SMS API (tests pass a mock)
    """
    settings = settings or get_settings()
    log_buffer = RecentLogBuffer(settings.LOG_BUFFER_SIZE)
    setup_logging(settings.LOG_LEVEL, buffer=log_buffer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: create the schema, seed records, load consent state
        - Shutdown: close the SMS API client and database engine
        """
        services = build_services(settings, http_client=http_client, log_buffer=log_buffer)
        app.state.services = services
        logger.info(
            "Opt-out service started",
            extra={
                "storage": services.records.describe()["backends"],
                "credentials": services.credentials.get().source,
            },
        )
        yield
        await services.close()

    app = FastAPI(
        title="SMS Opt-Out Gate",
        description="Opt-in/opt-out consent tracking and gated SMS sending",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
