"""
=============================================================================
CHY ECONOMY - Ledger de Saldo CHY
=============================================================================
Motor único de mutación de saldo.

GARANTÍAS:
- Exactamente una vez por clave de idempotencia, sin importar cuántas veces
  reintente el llamador
- Ningún saldo queda negativo (sin aplicación parcial)
- El historial de entradas reconstruye el saldo desde cero (reconciliación)

CONCURRENCIA: el lock es la fila del usuario (SELECT ... FOR UPDATE) dentro
de la transacción de BD. No hay mutex en proceso: la BD es la única fuente
de verdad compartida entre todas las instancias del servidor.

El Ledger NUNCA reintenta internamente. Toda falla sale tipada al llamador,
que decide la política (reintentar es seguro gracias a la clave).
=============================================================================
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import AuditSeverity, ChyTransaction, TransactionKind, User, utcnow
from .audit import AuditSink
from .errors import (
    AccountNotFound,
    EconomyError,
    IdempotencyConflict,
    InsufficientBalance,
    LedgerBusy,
    StorageFailure,
)
from .idempotency import derive_idempotency_key
from .security import SecurityContext

logger = logging.getLogger(__name__)

# deadlock, lock_not_available, query_canceled (lock/statement timeout), serialization
_LOCK_SQLSTATES = {"40P01", "55P03", "57014", "40001"}


def _is_lock_conflict(exc: DBAPIError) -> bool:
    if isinstance(exc, OperationalError):
        return True
    state = getattr(exc.orig, "sqlstate", None) or getattr(exc.orig, "pgcode", None)
    return state in _LOCK_SQLSTATES


# =============================================================================
# RESULTADOS
# =============================================================================

@dataclass(frozen=True)
class TransactionResult:
    """Resultado de una mutación (o de su repetición idempotente)."""
    transaction_id: str
    new_balance: int
    idempotency_key: str
    is_duplicate: bool = False


@dataclass(frozen=True)
class ReconciliationReport:
    """Comparación entre el saldo guardado y la suma del ledger."""
    user_id: str
    stored_balance: int
    calculated_balance: int
    is_consistent: bool

    @property
    def drift(self) -> int:
        return self.stored_balance - self.calculated_balance

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "stored_balance": self.stored_balance,
            "calculated_balance": self.calculated_balance,
            "is_consistent": self.is_consistent,
        }


# =============================================================================
# LEDGER
# =============================================================================

class Ledger:
    """
    Libro Mayor de CHY.

    Cada mutación:
    1. Busca una entrada previa por clave de idempotencia (repetición = no-op)
    2. Bloquea la fila del usuario
    3. Calcula el nuevo saldo y rechaza negativos
    4. Escribe el saldo e inserta la entrada inmutable
    5. Confirma
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditSink,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.audit = audit
        self.clock = clock

    # -------------------------------------------------------------------------
    # Cuentas
    # -------------------------------------------------------------------------

    async def open_account(
        self,
        user_id: str,
        webapp_user_id: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> User:
        """
        Crea la cuenta con saldo 0 si no existe.
        El saldo inicial siempre es 0: todo crédito pasa por el ledger.
        Una cuenta existente sin webapp vinculada adopta `webapp_user_id`.
        """
        async with self.session_factory() as session:
            async with session.begin():
                user = await session.get(User, user_id)
                if user is None:
                    user = User(
                        id=user_id,
                        webapp_user_id=webapp_user_id,
                        display_name=display_name,
                        chy_balance=0,
                    )
                    session.add(user)
                elif webapp_user_id and user.webapp_user_id is None:
                    user.webapp_user_id = webapp_user_id
        return user

    # -------------------------------------------------------------------------
    # Mutación de saldo
    # -------------------------------------------------------------------------

    async def execute_transaction(
        self,
        kind: Union[TransactionKind, str],
        amount: int,
        reference_id: Optional[str],
        reference_type: Optional[str],
        context: SecurityContext,
        idempotency_key: Optional[str] = None,
    ) -> TransactionResult:
        """
        Aplica `amount` (positivo = crédito, negativo = débito) al saldo del
        usuario del contexto, exactamente una vez por clave.

        Args:
            kind: Tipo de transacción (enumeración cerrada)
            amount: Monto entero con signo
            reference_id: Evento de origen (competencia, fecha del bono...)
            reference_type: Clase de evento (p.ej. "flappy_daily")
            context: Usuario que actúa + metadatos del cliente
            idempotency_key: Clave explícita; si se omite se deriva de
                (usuario, tipo, referencia, monto, día UTC)

        Returns:
            TransactionResult; is_duplicate=True si fue una repetición

        Raises:
            InsufficientBalance, AccountNotFound, IdempotencyConflict,
            LedgerBusy (reintentable), StorageFailure
        """
        kind = TransactionKind(kind)
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise TypeError(f"amount must be int, got {type(amount).__name__}")

        key = idempotency_key or derive_idempotency_key(
            context.user_id, kind, reference_id, amount, self.clock().date()
        )

        # 1. ¿Repetición?
        try:
            existing = await self._find_by_key(key)
        except SQLAlchemyError as exc:
            raise (await self._storage_failure(kind, amount, context, exc)) from exc

        if existing is not None:
            return await self._replay(existing, kind, amount, key, context)

        # 2-5. Unidad de trabajo atómica con lock de fila
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    user = await session.scalar(
                        select(User).where(User.id == context.user_id).with_for_update()
                    )
                    if user is None:
                        raise AccountNotFound(f"User {context.user_id} not found")

                    balance_before = user.chy_balance or 0
                    balance_after = balance_before + amount
                    if balance_after < 0:
                        raise InsufficientBalance(balance_before, amount)

                    user.chy_balance = balance_after

                    entry = ChyTransaction(
                        user_id=context.user_id,
                        webapp_user_id=context.webapp_user_id or user.webapp_user_id,
                        tx_kind=kind,
                        amount=amount,
                        balance_before=balance_before,
                        balance_after=balance_after,
                        reference_id=reference_id,
                        reference_type=reference_type,
                        idempotency_key=key,
                        client_ip=context.client_ip,
                        user_agent=context.user_agent,
                        device_fingerprint=context.device_fingerprint,
                    )
                    session.add(entry)
                    await session.flush()
                    transaction_id = entry.id

        except InsufficientBalance as exc:
            logger.info(
                "Insufficient balance for %s %s (user=%s): %s",
                kind.value, amount, context.user_id, exc.detail,
            )
            await self._record_failure(kind, amount, context, exc.detail)
            raise

        except EconomyError as exc:
            await self._record_failure(kind, amount, context, exc.detail)
            raise

        except IntegrityError as exc:
            # Otra solicitud con la misma clave ganó la carrera
            try:
                winner = await self._find_by_key(key)
            except SQLAlchemyError:
                winner = None
            if winner is not None:
                return await self._replay(winner, kind, amount, key, context)
            raise (await self._storage_failure(kind, amount, context, exc)) from exc

        except DBAPIError as exc:
            if not _is_lock_conflict(exc):
                raise (await self._storage_failure(kind, amount, context, exc)) from exc
            logger.warning(
                "Lock conflict on %s %s (user=%s)", kind.value, amount, context.user_id
            )
            await self._record_failure(kind, amount, context, "lock timeout or deadlock")
            raise LedgerBusy(f"Lock conflict for user {context.user_id}") from exc

        except SQLAlchemyError as exc:
            raise (await self._storage_failure(kind, amount, context, exc)) from exc

        logger.info(
            "Transaction complete: %s, amount: %s, user: %s, balance: %s",
            kind.value, amount, context.user_id, balance_after,
        )
        return TransactionResult(
            transaction_id=transaction_id,
            new_balance=balance_after,
            idempotency_key=key,
        )

    # -------------------------------------------------------------------------
    # Lecturas
    # -------------------------------------------------------------------------

    async def get_balance(self, user_id: str) -> int:
        try:
            async with self.session_factory() as session:
                balance = await session.scalar(
                    select(User.chy_balance).where(User.id == user_id)
                )
        except SQLAlchemyError as exc:
            logger.exception("Error fetching balance for %s", user_id)
            raise StorageFailure(str(exc)) from exc

        if balance is None:
            raise AccountNotFound(f"User {user_id} not found")
        return balance

    async def transaction_history(self, user_id: str, limit: int = 50) -> List[ChyTransaction]:
        """Entradas del usuario, de la más reciente a la más antigua."""
        try:
            async with self.session_factory() as session:
                result = await session.scalars(
                    select(ChyTransaction)
                    .where(ChyTransaction.user_id == user_id)
                    .order_by(ChyTransaction.created_at.desc())
                    .limit(limit)
                )
                return list(result)
        except SQLAlchemyError as exc:
            logger.exception("Error fetching transaction history for %s", user_id)
            raise StorageFailure(str(exc)) from exc

    async def find_by_reference(
        self,
        user_id: str,
        kind: TransactionKind,
        reference_id: str,
    ) -> Optional[ChyTransaction]:
        """Entrada más reciente del usuario para (tipo, referencia)."""
        try:
            async with self.session_factory() as session:
                return await session.scalar(
                    select(ChyTransaction)
                    .where(
                        ChyTransaction.user_id == user_id,
                        ChyTransaction.tx_kind == kind,
                        ChyTransaction.reference_id == reference_id,
                    )
                    .order_by(ChyTransaction.created_at.desc())
                    .limit(1)
                )
        except SQLAlchemyError as exc:
            logger.exception("Error looking up %s %s for %s", kind.value, reference_id, user_id)
            raise StorageFailure(str(exc)) from exc

    async def count_by_reference(
        self,
        user_id: str,
        kind: TransactionKind,
        reference_id: str,
    ) -> int:
        """Cantidad de entradas del usuario para (tipo, referencia)."""
        try:
            async with self.session_factory() as session:
                count = await session.scalar(
                    select(func.count())
                    .select_from(ChyTransaction)
                    .where(
                        ChyTransaction.user_id == user_id,
                        ChyTransaction.tx_kind == kind,
                        ChyTransaction.reference_id == reference_id,
                    )
                )
        except SQLAlchemyError as exc:
            logger.exception("Error counting %s %s for %s", kind.value, reference_id, user_id)
            raise StorageFailure(str(exc)) from exc
        return int(count or 0)

    async def linked_webapp_user(self, user_id: str) -> Optional[str]:
        """Cuenta de la webapp vinculada al usuario, si existe."""
        try:
            async with self.session_factory() as session:
                user = await session.get(User, user_id)
        except SQLAlchemyError as exc:
            logger.exception("Error fetching account %s", user_id)
            raise StorageFailure(str(exc)) from exc

        if user is None:
            raise AccountNotFound(f"User {user_id} not found")
        return user.webapp_user_id

    async def reconcile(self, user_id: str) -> ReconciliationReport:
        """
        Suma todas las entradas del usuario y la compara con el saldo guardado.

        Solo lectura: una inconsistencia se registra como CRITICAL y se
        devuelve al operador, nunca se corrige en silencio.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    stored = await session.scalar(
                        select(User.chy_balance).where(User.id == user_id).with_for_update()
                    )
                    calculated = await session.scalar(
                        select(func.coalesce(func.sum(ChyTransaction.amount), 0))
                        .where(ChyTransaction.user_id == user_id)
                    )
        except SQLAlchemyError as exc:
            logger.exception("Reconciliation error for %s", user_id)
            raise StorageFailure(str(exc)) from exc

        report = ReconciliationReport(
            user_id=user_id,
            stored_balance=int(stored or 0),
            calculated_balance=int(calculated or 0),
            is_consistent=int(stored or 0) == int(calculated or 0),
        )

        if not report.is_consistent:
            await self.audit.record(
                "balance_inconsistency",
                AuditSeverity.CRITICAL,
                f"User {user_id}: stored={report.stored_balance}, "
                f"calculated={report.calculated_balance}",
                SecurityContext.system(user_id, "reconciliation"),
            )

        return report

    # -------------------------------------------------------------------------
    # Internos
    # -------------------------------------------------------------------------

    async def _find_by_key(self, key: str) -> Optional[ChyTransaction]:
        async with self.session_factory() as session:
            return await session.scalar(
                select(ChyTransaction).where(ChyTransaction.idempotency_key == key)
            )

    async def _replay(
        self,
        existing: ChyTransaction,
        kind: TransactionKind,
        amount: int,
        key: str,
        context: SecurityContext,
    ) -> TransactionResult:
        if existing.user_id != context.user_id or existing.tx_kind != kind:
            await self.audit.record(
                "idempotency_key_conflict",
                AuditSeverity.CRITICAL,
                f"Key {key} belongs to {existing.tx_kind.value} of user "
                f"{existing.user_id}; rejected {kind.value} {amount}",
                context,
            )
            raise IdempotencyConflict(f"Idempotency key {key} already used")

        logger.info("Duplicate transaction detected: %s", key)
        await self.audit.record(
            "duplicate_transaction",
            AuditSeverity.INFO,
            f"Duplicate idempotency key: {key}, txType: {kind.value}",
            context,
        )
        return TransactionResult(
            transaction_id=existing.id,
            new_balance=existing.balance_after,
            idempotency_key=key,
            is_duplicate=True,
        )

    async def _record_failure(
        self,
        kind: TransactionKind,
        amount: int,
        context: SecurityContext,
        reason: str,
        severity: AuditSeverity = AuditSeverity.WARNING,
    ) -> None:
        await self.audit.record(
            "transaction_failed",
            severity,
            f"{kind.value} failed: {reason}, amount: {amount}",
            context,
        )

    async def _storage_failure(
        self,
        kind: TransactionKind,
        amount: int,
        context: SecurityContext,
        exc: Exception,
    ) -> StorageFailure:
        logger.error(
            "Transaction failed: %s %s (user=%s)",
            kind.value, amount, context.user_id,
            exc_info=exc,
        )
        await self._record_failure(
            kind, amount, context, type(exc).__name__, AuditSeverity.CRITICAL
        )
        return StorageFailure(str(exc))
