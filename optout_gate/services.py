"""
Service container wiring storage, consent state and the send path together.

One container is built per application instance and handed to request
handlers through a FastAPI dependency, so tests can run isolated instances
side by side.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from optout_gate.config import Settings
from optout_gate.consent import ConsentStore
from optout_gate.credentials import CredentialResolver
from optout_gate.gate import SendGate
from optout_gate.history import HistoryLog
from optout_gate.inbound import InboundProcessor
from optout_gate.logging_utils import RecentLogBuffer
from optout_gate.registry import ConfigRegistry
from optout_gate.storage import (
    FileRecordBackend,
    RecordStore,
    SqlRecordBackend,
    create_db_engine,
    create_session_factory,
    init_db,
)
from optout_gate.transport import SmsTransport

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    records: RecordStore
    registry: ConfigRegistry
    credentials: CredentialResolver
    consent: ConsentStore
    history: HistoryLog
    inbound: InboundProcessor
    transport: SmsTransport
    gate: SendGate
    log_buffer: RecentLogBuffer

    async def close(self) -> None:
        await self.transport.close()
        self.engine.dispose()


def build_services(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    log_buffer: Optional[RecentLogBuffer] = None,
) -> Services:
    """
    Create every component for one application instance.

    The database schema is created and missing records are seeded before
    the consent and history state is loaded.
    """
    engine = create_db_engine(settings.DATABASE_URL)
    init_db(engine)
    session_factory = create_session_factory(engine)

    secondary = FileRecordBackend(settings.DATA_DIR) if settings.DATA_DIR else None
    records = RecordStore(SqlRecordBackend(session_factory), secondary)
    records.initialize()

    registry = ConfigRegistry(records)
    consent = ConsentStore(records)
    history = HistoryLog(records)
    transport = SmsTransport(
        base_url=settings.SMS_API_BASE_URL,
        timeout=settings.TRANSPORT_TIMEOUT_SECONDS,
        http_client=http_client,
    )

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        records=records,
        registry=registry,
        credentials=CredentialResolver(records, settings.VONAGE_API_KEY, settings.VONAGE_API_SECRET),
        consent=consent,
        history=history,
        inbound=InboundProcessor(registry, consent, history),
        transport=transport,
        gate=SendGate(consent, transport, bulk_delay_seconds=settings.BULK_SEND_DELAY_MS / 1000),
        log_buffer=log_buffer or RecentLogBuffer(settings.LOG_BUFFER_SIZE),
    )


def get_services(request: Request) -> Services:
    """Dependency returning the container of the app serving this request."""
    return request.app.state.services
