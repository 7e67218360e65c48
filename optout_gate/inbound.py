"""
Inbound Event Processor for the provider's inbound-SMS webhook.

The provider retries any webhook that is not acknowledged with a 2xx, so
processing never raises: malformed or unmatched payloads are logged and
discarded, and the HTTP layer always answers 200.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from optout_gate.consent import ConsentStore
from optout_gate.history import HistoryLog
from optout_gate.phrases import Classification, classify_text, find_config
from optout_gate.registry import ConfigRegistry
from optout_gate.schemas import HistoryEntry, OptOutEntry
from optout_gate.utils import normalize_number, now_iso

logger = logging.getLogger(__name__)


@dataclass
class InboundMessage:
    sender: str
    to: str
    text: str


@dataclass
class InboundOutcome:
    """
    result is one of:
    - "optout" / "optin": a phrase matched and state was updated
    - "no_match": a config matched the destination but no phrase did
    - "unmatched": no config for the destination number
    - "ignored": sender or text missing
    """
    result: str
    number: str = ""
    config_id: Optional[str] = None

    @property
    def action(self) -> Optional[str]:
        return self.result if self.result in ("optout", "optin") else None


def extract_message(payload: Mapping[str, Any]) -> Optional[InboundMessage]:
    """
    Pull sender, destination and text out of a webhook payload.

    Accepts both `msisdn`/`text` (provider format) and `from`/`message`.

    Returns:
        InboundMessage, or None when sender or text is missing
    """
    sender = payload.get("msisdn") or payload.get("from")
    text = payload.get("text") or payload.get("message") or ""
    text = str(text).strip()
    if not sender or not text:
        return None
    return InboundMessage(sender=str(sender), to=str(payload.get("to") or ""), text=text)


class InboundProcessor:

    def __init__(
        self,
        registry: ConfigRegistry,
        consent: ConsentStore,
        history: HistoryLog,
        timestamp: Callable[[], str] = now_iso,
    ):
        self._registry = registry
        self._consent = consent
        self._history = history
        self._timestamp = timestamp

    def handle(self, payload: Mapping[str, Any]) -> InboundOutcome:
        logger.info(f"Inbound SMS payload: {dict(payload)}")

        message = extract_message(payload)
        if message is None:
            logger.warning("Missing from or text - ignoring")
            return InboundOutcome(result="ignored")

        number = normalize_number(message.sender)
        if not number:
            logger.warning(f"Sender {message.sender!r} has no digits - ignoring")
            return InboundOutcome(result="ignored")

        config = find_config(self._registry.list_configs(), message.to)
        if config is None:
            logger.warning(f"No config found for number {message.to} (normalized: {normalize_number(message.to)})")
            return InboundOutcome(result="unmatched", number=number)

        classification = classify_text(config, message.text)
        logger.info(f"Message from {number} to {message.to} classified as {classification.value} (config {config.id})")

        if classification is Classification.OPTOUT:
            self._consent.add(OptOutEntry(number=number, config_id=config.id))
        elif classification is Classification.OPTIN:
            self._consent.remove(number)
        else:
            return InboundOutcome(result="no_match", number=number, config_id=config.id)

        # History is appended for every matched phrase, even when the
        # consent state was already what the message asked for.
        self._history.append(HistoryEntry(
            number=number,
            action=classification.value,
            timestamp=self._timestamp(),
            received_on=message.to,
            config_id=config.id,
        ))
        return InboundOutcome(result=classification.value, number=number, config_id=config.id)
