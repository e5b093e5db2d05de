"""Fixtures compartidas: base SQLite por test, reloj controlable y servicios armados."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from sqlalchemy import select

from chy_economy.app.audit import AuditSink
from chy_economy.app.economy import EconomyService
from chy_economy.app.ledger import Ledger
from chy_economy.app.scoring import ScoreGate
from chy_economy.app.security import RateLimiter, SecurityContext
from chy_economy.app.sessions import SessionManager
from chy_economy.database import create_engine, create_session_factory, create_tables
from chy_economy.models import SecurityAuditLog, TransactionKind


class FrozenClock:
    """Reloj inyectable que solo avanza cuando el test lo pide."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'chy.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def audit(session_factory) -> AuditSink:
    return AuditSink(session_factory)


@pytest.fixture
def ledger(session_factory, audit, clock) -> Ledger:
    return Ledger(session_factory, audit, clock=clock)


@pytest.fixture
def limiter(session_factory, clock) -> RateLimiter:
    return RateLimiter(session_factory, clock=clock)


@pytest.fixture
def sessions(session_factory, audit, clock) -> SessionManager:
    return SessionManager(session_factory, audit, clock=clock)


@pytest.fixture
def gate(limiter, sessions, audit) -> ScoreGate:
    return ScoreGate(limiter, sessions, audit)


@pytest.fixture
def economy(ledger, sessions, limiter, audit, clock) -> EconomyService:
    return EconomyService(ledger, sessions, limiter, audit, daily_bonus_amount=10, clock=clock)


@pytest.fixture
def context() -> SecurityContext:
    return SecurityContext(user_id="player-1", client_ip="10.0.0.7", user_agent="flappy-ios/2.3")


@pytest.fixture
def fund(ledger):
    """Abre la cuenta y la deja con `amount` CHY vía ajuste administrativo."""

    async def _fund(user_id: str, amount: int) -> None:
        await ledger.open_account(user_id)
        if amount:
            await ledger.execute_transaction(
                TransactionKind.ADMIN_ADJUSTMENT,
                amount,
                reference_id="seed",
                reference_type="test_seed",
                context=SecurityContext.system(user_id, "test-seed"),
            )

    return _fund


@pytest.fixture
def audit_events(session_factory):
    """Eventos de la bitácora, opcionalmente filtrados por tipo."""

    async def _events(event_type: Optional[str] = None) -> List[SecurityAuditLog]:
        async with session_factory() as session:
            query = select(SecurityAuditLog).order_by(SecurityAuditLog.created_at)
            if event_type:
                query = query.where(SecurityAuditLog.event_type == event_type)
            return list(await session.scalars(query))

    return _events
