"""FastAPI dependencies for dependency injection."""

import logging
from collections.abc import AsyncGenerator
from functools import lru_cache
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payout_engine.config import PayoutFlags, get_settings
from payout_engine.database import init_db
from payout_engine.events import DomainEvent, EventEmitter
from payout_engine.providers import TransferProvider, build_transfer_provider
from payout_engine.services import SettlementGate, SettlementService

logger = logging.getLogger(__name__)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the configured database."""
    _, factory = init_db()
    return factory


async def get_db_session(
    factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


@lru_cache(maxsize=1)
def get_transfer_provider() -> TransferProvider | None:
    """Payment processor named by TRANSFER_PROVIDER; None when unset.

    Releases are refused without one; previews and holds still work.
    """
    return build_transfer_provider(get_settings().transfer_provider)


def _log_event(event: DomainEvent) -> None:
    logger.info("Settlement event %s: %s", event.event_type, event.to_json())


@lru_cache(maxsize=1)
def get_event_emitter() -> EventEmitter:
    """Process-wide emitter; statement and notification handlers register here."""
    emitter = EventEmitter()
    emitter.on_all(_log_event)
    return emitter


def get_flags() -> PayoutFlags:
    """Feature flags, read once per request."""
    return PayoutFlags.from_env()


def get_gate(
    factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    provider: Annotated[TransferProvider | None, Depends(get_transfer_provider)],
    flags: Annotated[PayoutFlags, Depends(get_flags)],
) -> SettlementGate:
    settings = get_settings()
    return SettlementGate(
        factory,
        provider,
        flags=flags,
        emitter=get_event_emitter(),
        base_currency=settings.base_currency,
        transfer_timeout_seconds=settings.transfer_timeout_seconds,
    )


def get_settlement_service(
    factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
    gate: Annotated[SettlementGate, Depends(get_gate)],
) -> SettlementService:
    return SettlementService(factory, gate)


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Gate = Annotated[SettlementGate, Depends(get_gate)]
Service = Annotated[SettlementService, Depends(get_settlement_service)]
