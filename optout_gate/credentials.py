"""
Two-tier credential resolution.

When both VONAGE_API_KEY and VONAGE_API_SECRET are set in the environment
they always win, are reported as locked, and cannot be changed at runtime.
Otherwise the persisted `credentials` record is used.
"""

import logging
from typing import Optional

from optout_gate.errors import ValidationError
from optout_gate.schemas import Credentials
from optout_gate.storage import RecordStore

logger = logging.getLogger(__name__)

RECORD_KEY = "credentials"

MASKED_SECRET = "••••••••"

ENV_LOCKED_MESSAGE = "Credentials are set via environment variables and cannot be changed"


class CredentialResolver:

    def __init__(self, records: RecordStore, env_api_key: Optional[str] = None, env_api_secret: Optional[str] = None):
        self._records = records
        self._env_api_key = env_api_key
        self._env_api_secret = env_api_secret

    @property
    def from_environment(self) -> bool:
        return bool(self._env_api_key and self._env_api_secret)

    def get(self) -> Credentials:
        if self.from_environment:
            return Credentials(
                api_key=self._env_api_key,
                api_secret=self._env_api_secret,
                is_locked=True,
                source="environment",
            )
        stored = self._records.read(RECORD_KEY) or {}
        stored.pop("source", None)
        return Credentials.model_validate({**stored, "source": "file"})

    def masked(self) -> dict:
        """Credentials for display; the secret is hidden while locked."""
        credentials = self.get().model_dump(by_alias=True)
        if credentials["isLocked"]:
            credentials["apiSecret"] = MASKED_SECRET
        return credentials

    def save(self, api_key: Optional[str], api_secret: Optional[str]) -> None:
        """Store and lock new credentials."""
        if self.from_environment:
            raise ValidationError(ENV_LOCKED_MESSAGE)
        self._records.write(RECORD_KEY, {
            "apiKey": api_key or "",
            "apiSecret": api_secret or "",
            "isLocked": True,
        })
        logger.info("Credentials saved and locked")

    def unlock(self) -> Credentials:
        """Clear the lock so credentials can be edited; returns the unmasked values."""
        if self.from_environment:
            raise ValidationError(ENV_LOCKED_MESSAGE)
        stored = self._records.read(RECORD_KEY) or {}
        stored["isLocked"] = False
        stored.pop("source", None)
        self._records.write(RECORD_KEY, stored)
        logger.info("Credentials unlocked for editing")
        return Credentials.model_validate({**stored, "source": "file"})
