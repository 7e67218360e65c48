"""Outbound SMS transport for the Vonage SMS REST API via httpx.

Speaks the classic ``/sms/json`` wire format::

    request:  {api_key, api_secret, to, from, text}
    response: {"message-count": "1",
               "messages": [{"to", "message-id", "status", "error-text"}]}

A ``status`` of ``"0"`` means the message was accepted.
"""

import logging
from typing import Any, Optional

import httpx

from optout_gate.metrics import sms_api_latency_seconds

logger = logging.getLogger(__name__)

SMS_API_BASE = "https://rest.nexmo.com"

SUCCESS_STATUS = "0"


class TransportError(Exception):
    """The SMS API could not be reached or answered with something unparseable."""


def first_message(envelope: Any) -> Optional[dict[str, Any]]:
    """Return ``messages[0]`` of a response envelope, or None if absent."""
    if not isinstance(envelope, dict):
        return None
    messages = envelope.get("messages")
    if isinstance(messages, list) and messages and isinstance(messages[0], dict):
        return messages[0]
    return None


def envelope(status: str, error_text: Optional[str] = None, to: Optional[str] = None) -> dict[str, Any]:
    """Build a single-message response envelope in the SMS API format."""
    message: dict[str, Any] = {}
    if to is not None:
        message["to"] = to
    message["status"] = status
    if error_text is not None:
        message["error-text"] = error_text
    return {"message-count": "1", "messages": [message]}


class SmsTransport:
    """Async client for the SMS API.

    Args:
        base_url: Override for testing; defaults to the production API.
        timeout: Per-request timeout in seconds.
        http_client: Pre-built client (e.g. with ``httpx.MockTransport``).
    """

    def __init__(
        self,
        *,
        base_url: str = SMS_API_BASE,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout),
        )
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the underlying HTTP client if we own it."""
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def send(
        self, api_key: str, api_secret: str, to: str, from_: str, text: str
    ) -> dict[str, Any]:
        """Submit one SMS and return the API's response envelope unchanged.

        Raises:
            TransportError: On network errors, timeouts or a non-JSON body.
        """
        payload = {
            "api_key": api_key,
            "api_secret": api_secret,
            "to": to,
            "from": from_,
            "text": text,
        }
        logger.info("Sending SMS to=...%s from=%s chars=%d", to[-4:], from_, len(text))

        try:
            with sms_api_latency_seconds.time():
                response = await self._client.post("/sms/json", json=payload)
            data = response.json()
        except httpx.HTTPError as e:
            logger.error("SMS API request failed: %s", e)
            raise TransportError(str(e) or e.__class__.__name__) from e
        except ValueError as e:
            logger.error("SMS API returned a non-JSON body (HTTP %s)", response.status_code)
            raise TransportError(f"Invalid response from SMS API (HTTP {response.status_code})") from e

        message = first_message(data)
        if message is not None:
            logger.info(
                "SMS API answered status=%s message_id=%s",
                message.get("status"),
                message.get("message-id", "none"),
            )
        return data

    async def account_numbers(self, api_key: str, api_secret: str) -> list[dict[str, Any]]:
        """List the numbers owned by the account.

        Raises:
            TransportError: On network errors or an unusable response.
        """
        try:
            response = await self._client.get(
                "/account/numbers",
                params={"api_key": api_key, "api_secret": api_secret},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error("Account numbers lookup failed: %s", e)
            raise TransportError(str(e) or e.__class__.__name__) from e
        except ValueError as e:
            raise TransportError("Invalid response from SMS API") from e

        numbers = data.get("numbers") if isinstance(data, dict) else None
        return numbers or []
