"""
Rule sets (opt-out configs) and custom senders, both kept in the `config` record.
"""

import logging
import re
import threading
from typing import Iterable, Optional, Union

from optout_gate.errors import NotFoundError, ValidationError
from optout_gate.schemas import ConfigDocument, CustomSender, OptOutConfig, SenderRequest
from optout_gate.storage import RecordStore
from optout_gate.utils import new_id, normalize_number, now_iso

logger = logging.getLogger(__name__)

RECORD_KEY = "config"

SENDER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9]{3,11}$")


def is_valid_sender_id(sender_id: Optional[str]) -> bool:
    return bool(sender_id) and SENDER_ID_PATTERN.match(sender_id) is not None


class ConfigRegistry:
    """
    CRUD over opt-out configs and custom senders.

    A receiving number may be bound to at most one config; adding or
    updating a config onto a number that another config already uses is
    rejected. Documents written before that check existed may still hold
    duplicates, in which case inbound matching takes the first.
    """

    def __init__(self, records: RecordStore):
        self._records = records
        self._lock = threading.RLock()

    def get_document(self) -> ConfigDocument:
        return ConfigDocument.model_validate(self._records.read(RECORD_KEY))

    def _save(self, document: ConfigDocument) -> bool:
        return self._records.write(RECORD_KEY, document.model_dump(by_alias=True))

    @staticmethod
    def _check_unique_number(configs: Iterable[OptOutConfig], number: str, exclude_id: Optional[str] = None) -> None:
        normalized = normalize_number(number)
        for config in configs:
            if config.id != exclude_id and normalize_number(config.optout_number) == normalized:
                raise ValidationError(f"optoutNumber {number} is already configured (config {config.id})")

    # =========================================================================
    # Configs
    # =========================================================================

    def list_configs(self) -> list[OptOutConfig]:
        return self.get_document().optout_configs

    def replace_document(self, document: ConfigDocument) -> ConfigDocument:
        """Overwrite the whole config record (legacy save-all)."""
        seen: list[OptOutConfig] = []
        for config in document.optout_configs:
            self._check_unique_number(seen, config.optout_number)
            seen.append(config)
        with self._lock:
            self._save(document)
        logger.info(f"Config document replaced: {len(document.optout_configs)} configs")
        return document

    def add_config(
        self,
        optout_number: Optional[str],
        optout_phrase: Optional[str] = None,
        optin_phrase: Optional[str] = None,
    ) -> OptOutConfig:
        if not optout_number:
            raise ValidationError("optoutNumber is required")
        if not normalize_number(optout_number):
            raise ValidationError(f"Invalid optoutNumber: {optout_number}")

        with self._lock:
            document = self.get_document()
            self._check_unique_number(document.optout_configs, optout_number)
            config = OptOutConfig(
                id=new_id(),
                optout_number=optout_number,
                optout_phrase=optout_phrase or "STOP",
                optin_phrase=optin_phrase or "START",
            )
            document.optout_configs.append(config)
            self._save(document)

        logger.info(f"Config added: {optout_number} with phrases {config.optout_phrase}/{config.optin_phrase}")
        return config

    def update_config(
        self,
        config_id: str,
        optout_number: Optional[str] = None,
        optout_phrase: Optional[str] = None,
        optin_phrase: Optional[str] = None,
    ) -> OptOutConfig:
        """Change the non-empty fields of a config; its id never changes."""
        with self._lock:
            document = self.get_document()
            config = next((c for c in document.optout_configs if c.id == config_id), None)
            if config is None:
                raise NotFoundError("Configuration not found")

            if optout_number:
                if not normalize_number(optout_number):
                    raise ValidationError(f"Invalid optoutNumber: {optout_number}")
                self._check_unique_number(document.optout_configs, optout_number, exclude_id=config_id)
                config.optout_number = optout_number
            if optout_phrase:
                config.optout_phrase = optout_phrase
            if optin_phrase:
                config.optin_phrase = optin_phrase
            self._save(document)

        logger.info(f"Config {config_id} updated")
        return config

    def delete_config(self, config_id: str) -> None:
        with self._lock:
            document = self.get_document()
            remaining = [c for c in document.optout_configs if c.id != config_id]
            if len(remaining) == len(document.optout_configs):
                raise NotFoundError("Configuration not found")
            document.optout_configs = remaining
            self._save(document)
        logger.info(f"Config {config_id} deleted")

    # =========================================================================
    # Custom senders
    # =========================================================================

    def list_senders(self) -> list[CustomSender]:
        return self.get_document().custom_senders

    @staticmethod
    def _sender_exists(senders: Iterable[CustomSender], sender_id: str) -> bool:
        return any(s.sender_id.lower() == sender_id.lower() for s in senders)

    def add_sender(self, sender_id: Optional[str], description: Optional[str] = None) -> CustomSender:
        if not sender_id:
            raise ValidationError("senderId is required")
        if not is_valid_sender_id(sender_id):
            raise ValidationError("Sender ID must be 3-11 alphanumeric characters only")

        with self._lock:
            document = self.get_document()
            if self._sender_exists(document.custom_senders, sender_id):
                raise ValidationError("Sender ID already exists")
            sender = CustomSender(
                id=new_id(),
                sender_id=sender_id,
                description=description or "",
                created_at=now_iso(),
            )
            document.custom_senders.append(sender)
            self._save(document)

        logger.info(f"Custom sender added: {sender_id}")
        return sender

    def delete_sender(self, sender_row_id: str) -> None:
        with self._lock:
            document = self.get_document()
            remaining = [s for s in document.custom_senders if s.id != sender_row_id]
            if len(remaining) == len(document.custom_senders):
                raise NotFoundError("Sender not found")
            document.custom_senders = remaining
            self._save(document)
        logger.info(f"Custom sender deleted: {sender_row_id}")

    def add_senders_bulk(self, senders: list[Union[str, SenderRequest]]) -> dict:
        """
        Add several senders, skipping invalid or duplicate ones.

        Returns:
            {"added": [senderId, ...], "failed": [{"senderId", "reason"}, ...]}
        """
        results = {"added": [], "failed": []}
        with self._lock:
            document = self.get_document()
            for sender in senders:
                if isinstance(sender, str):
                    sender_id, description = sender, ""
                else:
                    sender_id, description = sender.sender_id, sender.description or ""

                if not is_valid_sender_id(sender_id):
                    results["failed"].append({
                        "senderId": sender_id,
                        "reason": "Invalid format (must be 3-11 alphanumeric chars)",
                    })
                    continue
                if self._sender_exists(document.custom_senders, sender_id):
                    results["failed"].append({"senderId": sender_id, "reason": "Already exists"})
                    continue

                document.custom_senders.append(CustomSender(
                    id=new_id(),
                    sender_id=sender_id,
                    description=description,
                    created_at=now_iso(),
                ))
                results["added"].append(sender_id)

            if results["added"]:
                self._save(document)

        logger.info(f"Bulk senders added: {len(results['added'])} success, {len(results['failed'])} failed")
        return results
