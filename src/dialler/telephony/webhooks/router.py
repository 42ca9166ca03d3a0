"""
FastAPI router for telephony provider status callbacks.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dialler.calls.router import get_call_service
from dialler.calls.service import CallService
from dialler.shared.database import get_db_session
from dialler.shared.exceptions import DependencyError, PermissionDeniedError
from dialler.shared.logging import get_logger
from dialler.telephony.config import TelephonyConfig, get_telephony_config
from dialler.telephony.signature import validate_twilio_signature
from dialler.telephony.webhooks.handler import WebhookHandler

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks/telephony", tags=["telephony"])


def get_webhook_handler(
    call_service: Annotated[CallService, Depends(get_call_service)],
) -> WebhookHandler:
    return WebhookHandler(call_service=call_service)


def _signed_url(request: Request, config: TelephonyConfig) -> str:
    url = config.get_webhook_url(request.url.path)
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


@router.post("/status", status_code=status.HTTP_204_NO_CONTENT)
async def receive_status_callback(
    request: Request,
    handler: Annotated[WebhookHandler, Depends(get_webhook_handler)],
    config: Annotated[TelephonyConfig, Depends(get_telephony_config)],
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> Response:
    """Apply a Twilio status callback.

    Well-formed callbacks are acknowledged, including ones for unknown or
    already ended calls. A store failure is reported as 503 so the provider
    retries.
    """
    form = {k: str(v) for k, v in (await request.form()).items()}

    if config.signature_check_enabled:
        signature = request.headers.get("X-Twilio-Signature")
        if not validate_twilio_signature(config.twilio_auth_token, _signed_url(request, config), form, signature):
            logger.warning(
                "Telephony callback signature rejected",
                extra={"call_sid": form.get("CallSid"), "has_signature": signature is not None},
            )
            raise PermissionDeniedError(message="Invalid telephony signature")

    try:
        await handler.handle_status_callback(form)
        await session.commit()
    except SQLAlchemyError as e:
        # Not acknowledged: the provider re-delivers and replays are idempotent.
        await session.rollback()
        logger.exception(
            "Failed to store telephony callback",
            extra={"call_sid": form.get("CallSid"), "call_status": form.get("CallStatus")},
        )
        raise DependencyError(message="Call store unavailable") from e

    return Response(status_code=status.HTTP_204_NO_CONTENT)
