"""
=============================================================================
CHY ECONOMY - Flujos Económicos (llamadores del Ledger)
=============================================================================
- Inscripción a competencia: rate limit + débito entry_fee + sesión ligada
- Bono diario: rate limit + crédito daily_bonus (una vez por día UTC)
- Devolución de inscripción
- Liquidación de competencia: reparto por puesto + un prize_payout por
  ganador con clave explícita (competencia, puesto)
- Ajuste administrativo
=============================================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Sequence

from ..models import AuditSeverity, TransactionKind, utcnow
from .audit import AuditSink
from .errors import EconomyError, EntryNotFound, LedgerBusy, RateLimited
from .idempotency import derive_entry_key, derive_payout_key, derive_refund_key
from .ledger import Ledger, TransactionResult
from .prizes import PrizeCalculator
from .security import RateLimiter, SecurityContext
from .sessions import IssuedSession, SessionManager

logger = logging.getLogger(__name__)

ENTER_ENDPOINT = "flappy/enter"
BONUS_ENDPOINT = "economy/bonus"


@dataclass(frozen=True)
class EntryReceipt:
    """Comprobante de inscripción: cobro + sesión de juego ligada."""
    session: IssuedSession
    transaction: TransactionResult


@dataclass
class SettlementReport:
    """Resultado de liquidar una competencia."""
    competition_id: str
    prize_pool: int
    amounts: Dict[int, int] = field(default_factory=dict)
    payouts: Dict[int, TransactionResult] = field(default_factory=dict)
    failures: Dict[int, str] = field(default_factory=dict)

    @property
    def total_paid(self) -> int:
        """Monto acreditado en esta corrida (sin contar repeticiones)."""
        return sum(
            self.amounts[rank]
            for rank, result in self.payouts.items()
            if not result.is_duplicate
        )

    @property
    def is_complete(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict:
        return {
            "competition_id": self.competition_id,
            "prize_pool": self.prize_pool,
            "payouts": {
                str(rank): {
                    "amount": self.amounts[rank],
                    "transaction_id": result.transaction_id,
                    "is_duplicate": result.is_duplicate,
                }
                for rank, result in self.payouts.items()
            },
            "failures": {str(rank): code for rank, code in self.failures.items()},
            "total_paid": self.total_paid,
        }


class EconomyService:
    """Orquesta los flujos de dinero sobre el Ledger y las sesiones."""

    def __init__(
        self,
        ledger: Ledger,
        sessions: SessionManager,
        rate_limiter: RateLimiter,
        audit: AuditSink,
        daily_bonus_amount: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.sessions = sessions
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.daily_bonus_amount = daily_bonus_amount
        self.clock = clock

    async def _throttle(self, context: SecurityContext, endpoint: str) -> None:
        decision = await self.rate_limiter.check_and_consume(context.user_id, endpoint)
        if not decision.allowed:
            await self.audit.record(
                "rate_limited", AuditSeverity.INFO,
                f"{endpoint} throttled, retry after {decision.retry_after}s",
                context,
            )
            raise RateLimited(endpoint, decision.retry_after)

    # =========================================================================
    # INSCRIPCIÓN
    # =========================================================================

    async def enter_competition(
        self,
        context: SecurityContext,
        competition_id: str,
        game_type: str,
        entry_fee: int,
        period: str,
        period_date: str,
    ) -> EntryReceipt:
        """
        Cobra la inscripción y emite la sesión ligada al periodo.

        La clave explícita (usuario, competencia, fecha, devoluciones previas)
        hace que reintentar no cobre dos veces: el reintento recibe una sesión
        nueva sobre el cobro vigente. Después de una devolución la clave
        cambia, así que volver a inscribirse cobra de nuevo.
        """
        if entry_fee <= 0:
            raise ValueError("entry_fee must be positive")

        await self._throttle(context, ENTER_ENDPOINT)

        reference_id = f"{competition_id}:{period_date}"
        refunds = await self.ledger.count_by_reference(
            context.user_id, TransactionKind.REFUND, reference_id
        )
        transaction = await self.ledger.execute_transaction(
            TransactionKind.ENTRY_FEE,
            -entry_fee,
            reference_id=reference_id,
            reference_type=f"{game_type}_{period}",
            context=context,
            idempotency_key=derive_entry_key(context.user_id, competition_id, period_date, refunds),
        )

        # Una devolución concurrente deja el cobro sin efecto: no hay sesión.
        if await self.ledger.count_by_reference(
            context.user_id, TransactionKind.REFUND, reference_id
        ) != refunds:
            logger.warning("Entry %s for %s refunded while entering", reference_id, context.user_id)
            raise LedgerBusy(f"Entry {reference_id} was refunded concurrently")

        session = await self.sessions.create_session(
            context.user_id,
            game_type,
            competition_id=competition_id,
            period=period,
            period_date=period_date,
        )
        return EntryReceipt(session=session, transaction=transaction)

    async def refund_entry(
        self,
        context: SecurityContext,
        competition_id: str,
        period_date: str,
    ) -> TransactionResult:
        """
        Devuelve lo cobrado por la inscripción vigente. Repetir la devolución
        sin una inscripción nueva de por medio es una repetición idempotente.
        """
        reference_id = f"{competition_id}:{period_date}"
        entry = await self.ledger.find_by_reference(
            context.user_id, TransactionKind.ENTRY_FEE, reference_id
        )
        if entry is None:
            raise EntryNotFound(f"No entry fee for {context.user_id} in {reference_id}")

        fees = await self.ledger.count_by_reference(
            context.user_id, TransactionKind.ENTRY_FEE, reference_id
        )
        refunds = await self.ledger.count_by_reference(
            context.user_id, TransactionKind.REFUND, reference_id
        )
        # Todas las inscripciones ya devueltas: se repite la última devolución.
        index = refunds if fees > refunds else refunds - 1

        return await self.ledger.execute_transaction(
            TransactionKind.REFUND,
            -entry.amount,
            reference_id=reference_id,
            reference_type=entry.reference_type,
            context=context,
            idempotency_key=derive_refund_key(context.user_id, competition_id, period_date, index),
        )

    # =========================================================================
    # BONO DIARIO
    # =========================================================================

    async def claim_daily_bonus(self, context: SecurityContext) -> TransactionResult:
        """
        Acredita el bono del día UTC. Un segundo reclamo el mismo día es una
        repetición idempotente (is_duplicate=True), no un segundo crédito.
        """
        await self._throttle(context, BONUS_ENDPOINT)

        today = self.clock().date().isoformat()
        return await self.ledger.execute_transaction(
            TransactionKind.DAILY_BONUS,
            self.daily_bonus_amount,
            reference_id=today,
            reference_type="daily_bonus",
            context=context,
        )

    # =========================================================================
    # LIQUIDACIÓN
    # =========================================================================

    async def settle_competition(
        self,
        competition_id: str,
        prize_pool: int,
        ranked_user_ids: Sequence[str],
    ) -> SettlementReport:
        """
        Paga a los ganadores en orden de puesto (ranked_user_ids[0] = puesto 1).

        Cada pago usa la clave (competencia, puesto): volver a liquidar es
        seguro. Una falla en un puesto no bloquea a los demás; queda en
        `failures` para reintentar.
        """
        prizes = PrizeCalculator.distribute_all(prize_pool, len(ranked_user_ids))
        report = SettlementReport(competition_id=competition_id, prize_pool=prize_pool)

        logger.info("Settling competition %s\n%s", competition_id,
                    PrizeCalculator.describe(prize_pool, len(ranked_user_ids)))

        for rank, amount in prizes.items():
            user_id = ranked_user_ids[rank - 1]
            context = SecurityContext.system(user_id, f"settlement:{competition_id}")
            report.amounts[rank] = amount
            try:
                report.payouts[rank] = await self.ledger.execute_transaction(
                    TransactionKind.PRIZE_PAYOUT,
                    amount,
                    reference_id=f"{competition_id}:{rank}",
                    reference_type="competition_prize",
                    context=context,
                    idempotency_key=derive_payout_key(competition_id, rank),
                )
            except EconomyError as exc:
                logger.error("Payout failed for %s rank %s: %s", competition_id, rank, exc.detail)
                report.failures[rank] = exc.code

        await self.audit.record(
            "competition_settled",
            AuditSeverity.INFO if report.is_complete else AuditSeverity.WARNING,
            f"Competition {competition_id}: pool={prize_pool}, winners={len(prizes)}, "
            f"paid={report.total_paid}, failed_ranks={sorted(report.failures)}",
        )
        return report

    # =========================================================================
    # AJUSTES ADMINISTRATIVOS
    # =========================================================================

    async def admin_adjust(
        self,
        user_id: str,
        amount: int,
        reason: str,
        admin_id: str,
        idempotency_key: str,
    ) -> TransactionResult:
        """
        Ajuste manual de saldo. Siempre deja rastro con el administrador.

        La clave la pone el llamador: dos ajustes iguales del mismo día son
        operaciones distintas y solo la clave puede distinguirlas.
        """
        if not idempotency_key:
            raise ValueError("idempotency_key is required for admin adjustments")

        context = SecurityContext.system(user_id, f"admin:{admin_id}")
        await self.audit.record(
            "admin_adjustment", AuditSeverity.INFO,
            f"Admin {admin_id} adjusts {user_id} by {amount}: {reason}",
            context,
        )
        return await self.ledger.execute_transaction(
            TransactionKind.ADMIN_ADJUSTMENT,
            amount,
            reference_id=f"admin:{admin_id}",
            reference_type="admin_adjustment",
            context=context,
            idempotency_key=idempotency_key,
        )
