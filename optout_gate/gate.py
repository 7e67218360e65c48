"""
Send Gate: the consent check in front of every outbound send.

Single sends, bulk sends and the SMS API shim all normalize the recipient
and consult the Consent Store before the transport is touched. A blocked
recipient never reaches the transport.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from optout_gate.consent import ConsentStore
from optout_gate.errors import PolicyRejection, UpstreamTransportError, ValidationError, require_fields
from optout_gate.metrics import record_send_outcome
from optout_gate.schemas import Credentials
from optout_gate.transport import SUCCESS_STATUS, SmsTransport, TransportError, envelope, first_message
from optout_gate.utils import normalize_number

logger = logging.getLogger(__name__)

# Extension status for the shim: recipient opted out (not a provider code)
OPTED_OUT_STATUS = "99"
# Provider codes reused by the shim for local failures
MISSING_PARAMS_STATUS = "2"
INTERNAL_ERROR_STATUS = "5"


class GateDecision(str, Enum):
    ALLOW = "allow"
    REJECT = "reject"


def sender_for(from_: Any) -> str:
    """
    Numeric senders are normalized to digits; alphanumeric custom senders
    are passed through unchanged.
    """
    value = str(from_).strip()
    if any(ch.isalpha() for ch in value):
        return value
    return normalize_number(value)


@dataclass
class SendResult:
    to: str
    message_id: Optional[str]


@dataclass
class BulkSendReport:
    total: int
    sent: list[dict] = field(default_factory=list)
    blocked: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "summary": {
                "total": self.total,
                "sent": len(self.sent),
                "blocked": len(self.blocked),
                "failed": len(self.failed),
            },
            "results": {
                "sent": self.sent,
                "blocked": self.blocked,
                "failed": self.failed,
            },
        }


class SendGate:

    def __init__(
        self,
        consent: ConsentStore,
        transport: SmsTransport,
        bulk_delay_seconds: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._consent = consent
        self._transport = transport
        self._bulk_delay = bulk_delay_seconds
        self._sleep = sleep

    def authorize(self, to: Any) -> GateDecision:
        if self._consent.is_blocked(normalize_number(to)):
            return GateDecision.REJECT
        return GateDecision.ALLOW

    @staticmethod
    def _require_credentials(credentials: Credentials) -> None:
        if not credentials.configured:
            raise ValidationError("API credentials not configured")

    async def send(self, credentials: Credentials, to: Any, from_: Any, text: Optional[str]) -> SendResult:
        """
        Send one SMS if the recipient has not opted out.

        Raises:
            ValidationError: Missing credentials or fields
            PolicyRejection: The recipient opted out
            UpstreamTransportError: The SMS API failed or refused the message
        """
        self._require_credentials(credentials)
        require_fields(to=to, **{"from": from_}, text=text)

        clean_to = normalize_number(to)
        if not clean_to:
            raise ValidationError(f"Invalid number: {to}")

        if self.authorize(clean_to) is GateDecision.REJECT:
            logger.warning(f"Blocked SMS to {clean_to} - number is opted out")
            record_send_outcome("single", "blocked")
            raise PolicyRejection(clean_to)

        try:
            data = await self._transport.send(
                credentials.api_key, credentials.api_secret, clean_to, sender_for(from_), text
            )
        except TransportError as e:
            record_send_outcome("single", "failed")
            raise UpstreamTransportError(str(e)) from e

        message = first_message(data)
        if message is None:
            record_send_outcome("single", "failed")
            raise UpstreamTransportError("Unexpected response from SMS API", data=data)

        if message.get("status") != SUCCESS_STATUS:
            record_send_outcome("single", "failed")
            raise UpstreamTransportError(
                message.get("error-text") or "Send failed",
                error_code=str(message.get("status")),
                to=clean_to,
            )

        record_send_outcome("single", "sent")
        logger.info(f"SMS sent to {clean_to}")
        return SendResult(to=clean_to, message_id=message.get("message-id"))

    async def send_bulk(
        self, credentials: Credentials, recipients: Optional[list], from_: Any, text: Optional[str]
    ) -> BulkSendReport:
        """
        Send the same SMS to several recipients, one at a time.

        Recipients are processed sequentially with a fixed pause after each
        transport call. Each one lands in exactly one of sent / blocked /
        failed; a recipient with no digits counts as failed.
        """
        self._require_credentials(credentials)
        if not recipients or not isinstance(recipients, list):
            raise ValidationError("Missing or invalid recipients array")
        require_fields(**{"from": from_}, text=text)

        sender = sender_for(from_)
        report = BulkSendReport(total=len(recipients))

        for recipient in recipients:
            clean_to = normalize_number(recipient)

            if not clean_to:
                report.failed.append({"to": recipient, "error": "Invalid number"})
                record_send_outcome("bulk", "failed")
                continue

            if self.authorize(clean_to) is GateDecision.REJECT:
                report.blocked.append({"to": clean_to, "reason": "opted-out"})
                record_send_outcome("bulk", "blocked")
                continue

            outcome = "failed"
            try:
                data = await self._transport.send(
                    credentials.api_key, credentials.api_secret, clean_to, sender, text
                )
                message = first_message(data)
                if message is None:
                    report.failed.append({"to": clean_to, "error": "Unexpected response"})
                elif message.get("status") == SUCCESS_STATUS:
                    report.sent.append({"to": clean_to, "messageId": message.get("message-id")})
                    outcome = "sent"
                else:
                    report.failed.append({
                        "to": clean_to,
                        "error": message.get("error-text"),
                        "errorCode": message.get("status"),
                    })
            except TransportError as e:
                report.failed.append({"to": clean_to, "error": str(e)})
            record_send_outcome("bulk", outcome)

            # Rate limit: pause after every transport call
            await self._sleep(self._bulk_delay)

        logger.info(
            f"Bulk send: {len(report.sent)} sent, {len(report.blocked)} blocked, {len(report.failed)} failed"
        )
        return report

    async def relay(self, payload: dict, configured: Credentials) -> dict:
        """
        SMS API shim: gate a request in the provider's own format.

        Credentials in the body take precedence over the configured ones.
        Blocked recipients get status 99; allowed requests are forwarded and
        the provider's response is returned verbatim.
        """
        api_key = payload.get("api_key") or configured.api_key
        api_secret = payload.get("api_secret") or configured.api_secret
        to, from_, text = payload.get("to"), payload.get("from"), payload.get("text")

        if not api_key or not api_secret:
            return envelope(MISSING_PARAMS_STATUS, "Missing API credentials")

        missing = [name for name, value in (("to", to), ("from", from_), ("text", text)) if not value]
        if missing:
            return envelope(MISSING_PARAMS_STATUS, f"Missing required fields: {', '.join(missing)}")

        clean_to = normalize_number(to)
        if not clean_to:
            return envelope(MISSING_PARAMS_STATUS, f"Invalid number: {to}")

        if self.authorize(clean_to) is GateDecision.REJECT:
            logger.warning(f"Blocked SMS to {clean_to} - number is opted out")
            record_send_outcome("shim", "blocked")
            return envelope(OPTED_OUT_STATUS, "Number is opted out", to=clean_to)

        try:
            data = await self._transport.send(api_key, api_secret, clean_to, str(from_), str(text))
        except TransportError as e:
            logger.error(f"SMS error: {e}")
            record_send_outcome("shim", "failed")
            return envelope(INTERNAL_ERROR_STATUS, str(e))

        message = first_message(data)
        if message is not None and message.get("status") == SUCCESS_STATUS:
            logger.info(f"SMS sent to {clean_to} via /sms/json")
            record_send_outcome("shim", "sent")
        else:
            logger.error(f"SMS failed to {clean_to}: {(message or {}).get('error-text')}")
            record_send_outcome("shim", "failed")
        return data
