"""
Pydantic schemas for persisted records and request/response validation.

This module contains:
- Record models stored in the config/optouts/history/credentials documents
- Request models for the management API, sends and the SMS API shim
- Response models for API responses

Persisted documents and API bodies use camelCase keys; the models expose
snake_case attributes with camelCase aliases.
"""

from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

CAMEL = ConfigDict(populate_by_name=True)

NumberLike = Union[str, int]


# =============================================================================
# Record Models
# =============================================================================

class OptOutConfig(BaseModel):
    """Opt-out/opt-in phrase rules bound to one receiving number."""
    model_config = CAMEL

    id: str = Field(..., description="Opaque identifier, immutable")
    optout_number: str = Field("", alias="optoutNumber", description="Receiving number")
    optout_phrase: str = Field("STOP", alias="optoutPhrase", description="Comma-separated opt-out phrases")
    optin_phrase: str = Field("START", alias="optinPhrase", description="Comma-separated opt-in phrases")


class CustomSender(BaseModel):
    """Alphanumeric sender identity used as a `from` value."""
    model_config = CAMEL

    id: str
    sender_id: str = Field(..., alias="senderId")
    description: str = ""
    created_at: str = Field(..., alias="createdAt")


class ConfigDocument(BaseModel):
    """The whole `config` record."""
    model_config = CAMEL

    optout_configs: list[OptOutConfig] = Field(default_factory=list, alias="optoutConfigs")
    custom_senders: list[CustomSender] = Field(default_factory=list, alias="customSenders")


class OptOutEntry(BaseModel):
    """A blocked number in the Consent Store."""
    model_config = CAMEL

    number: str = Field(..., description="Normalized number, primary key")
    config_id: str = Field(..., alias="configId", description="Config id or manual/api/legacy")
    original_number: Optional[str] = Field(None, alias="originalNumber")


class HistoryEntry(BaseModel):
    """An opt-in or opt-out event."""
    model_config = CAMEL

    number: str
    action: Literal["optin", "optout"]
    timestamp: str = Field(..., description="ISO-8601 UTC instant")
    received_on: str = Field(..., alias="receivedOn", description="Destination number, or manual/api")
    config_id: Optional[str] = Field(None, alias="configId")


class Credentials(BaseModel):
    model_config = CAMEL

    api_key: str = Field("", alias="apiKey")
    api_secret: str = Field("", alias="apiSecret")
    is_locked: bool = Field(False, alias="isLocked")
    source: Literal["environment", "file"] = "file"

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.api_secret)


# =============================================================================
# Request Models
# =============================================================================

class CredentialsRequest(BaseModel):
    model_config = CAMEL

    api_key: Optional[str] = Field(None, alias="apiKey")
    api_secret: Optional[str] = Field(None, alias="apiSecret")


class ConfigRequest(BaseModel):
    """Create or update an opt-out config. Omitted fields keep defaults / current values."""
    model_config = CAMEL

    optout_number: Optional[str] = Field(None, alias="optoutNumber")
    optout_phrase: Optional[str] = Field(None, alias="optoutPhrase")
    optin_phrase: Optional[str] = Field(None, alias="optinPhrase")


class SenderRequest(BaseModel):
    model_config = CAMEL

    sender_id: Optional[str] = Field(None, alias="senderId")
    description: Optional[str] = None


class BulkSendersRequest(BaseModel):
    senders: Optional[list[Union[str, SenderRequest]]] = None


class NumberRequest(BaseModel):
    number: Optional[NumberLike] = None


class BulkNumbersRequest(BaseModel):
    numbers: Optional[list[NumberLike]] = None


class SendRequest(BaseModel):
    model_config = CAMEL

    to: Optional[NumberLike] = None
    # 'from' is a reserved word in Python, so we use alias
    from_: Optional[NumberLike] = Field(None, alias="from")
    text: Optional[str] = None


class BulkSendRequest(BaseModel):
    model_config = CAMEL

    recipients: Optional[list[NumberLike]] = None
    from_: Optional[NumberLike] = Field(None, alias="from")
    text: Optional[str] = None


# =============================================================================
# Response Models
# =============================================================================

class SuccessResponse(BaseModel):
    success: bool = True


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
    timestamp: Optional[str] = None


class StatsResponse(BaseModel):
    """Opt-in/opt-out counts over the trailing window."""
    optins: int = Field(..., ge=0)
    optouts: int = Field(..., ge=0)


class CheckResponse(BaseModel):
    number: str
    blocked: bool


class SendResponse(BaseModel):
    model_config = CAMEL

    success: bool = True
    to: str
    message_id: Optional[str] = Field(None, alias="messageId")
    status: str = "sent"


class LogEntry(BaseModel):
    timestamp: str
    level: str
    message: str
