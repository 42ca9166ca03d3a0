"""
Handler for telephony status callbacks.

Parses the provider form payload and hands it to the call service, which
owns the state machine. Events are idempotent: the state machine ignores
repeated, out-of-order and post-terminal statuses.
"""

import logging
from collections.abc import Mapping

from pydantic import ValidationError as PydanticValidationError

from dialler.calls.schemas import TwilioWebhookPayload
from dialler.calls.service import CallService
from dialler.shared.exceptions import ValidationError
from dialler.shared.logging import get_logger, log_with_context

logger = get_logger(__name__)


def parse_status_callback(form: Mapping[str, str]) -> TwilioWebhookPayload:
    """Validate a Twilio status callback form.

    Raises:
        ValidationError: Required fields are missing.
    """
    try:
        return TwilioWebhookPayload.model_validate(dict(form))
    except PydanticValidationError as e:
        raise ValidationError(
            message="Malformed telephony status callback",
            details={"errors": [err["msg"] for err in e.errors()]},
        ) from e


class WebhookHandler:
    """Applies provider status callbacks to call sessions."""

    def __init__(self, call_service: CallService) -> None:
        self._calls = call_service

    async def handle_status_callback(self, form: Mapping[str, str]) -> bool:
        """Process one status callback.

        Args:
            form: Provider form fields.

        Returns:
            True if a known call session was found, False if it was dropped.
        """
        payload = parse_status_callback(form)
        log_with_context(
            logger,
            logging.INFO,
            "Telephony status callback received",
            call_sid=payload.call_sid,
            call_status=payload.call_status,
            direction=payload.direction,
        )

        call_session = await self._calls.handle_twilio_webhook(payload)
        if call_session is None:
            return False

        log_with_context(
            logger,
            logging.INFO,
            "Telephony status callback applied",
            call_sid=payload.call_sid,
            call_session_id=str(call_session.id),
            status=call_session.status.value,
        )
        return True
