"""
=============================================================================
CHY ECONOMY - Modelos de Base de Datos (SQLAlchemy)
=============================================================================
Ledger append-only de la moneda CHY, contadores de rate limiting, tokens de
sesión de juego de un solo uso y bitácora de auditoría de seguridad.

Principios de Diseño:
- Exactamente una vez: cada evento lógico muta el saldo una sola vez
  (idempotency_key única en el ledger)
- Integridad Financiera: el saldo nunca queda negativo (CHECK + validación)
- Inmutabilidad: el saldo es un "estado derivado" de la suma del historial
=============================================================================
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional, List
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# =============================================================================
# UTILIDADES DE TIEMPO
# =============================================================================

def utcnow() -> datetime:
    """Hora actual en UTC (timezone-aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Normaliza un datetime leído de la BD a UTC aware.
    SQLite devuelve datetimes naive aunque la columna sea timezone=True.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


# =============================================================================
# ENUMERACIONES DEL SISTEMA
# =============================================================================

class TransactionKind(str, PyEnum):
    """Tipos cerrados de movimiento en el ledger de CHY."""
    ENTRY_FEE = "entry_fee"                # Inscripción a competencia
    PRIZE_PAYOUT = "prize_payout"          # Premio de competencia
    DAILY_BONUS = "daily_bonus"            # Bono diario de login
    REFUND = "refund"                      # Devolución de inscripción
    ADMIN_ADJUSTMENT = "admin_adjustment"  # Ajuste manual (requiere auditoría)
    WEBAPP_SYNC = "webapp_sync"            # Sincronización con el webapp


class AuditSeverity(str, PyEnum):
    """Severidad de un evento de auditoría."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


# =============================================================================
# BASE DECLARATIVA
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Clase base para todos los modelos con soporte async."""
    pass


# =============================================================================
# TABLA: USERS (Titular del saldo CHY)
# =============================================================================

class User(Base):
    """
    Cuenta del jugador. El saldo CHY solo lo escribe el Ledger.

    SEGURIDAD: chy_balance se lee con SELECT ... FOR UPDATE dentro de la
    transacción del Ledger; dos mutaciones del mismo usuario se serializan
    en el lock de la fila, las de usuarios distintos corren en paralelo.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)

    # Identidad en el servicio upstream (webapp)
    webapp_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # ==========================================================================
    # SALDO (NO NEGOCIABLE)
    # Entero: 1 unidad = 1 CHY
    # ==========================================================================
    chy_balance: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False
    )

    # Relaciones
    transactions: Mapped[List["ChyTransaction"]] = relationship(
        back_populates="user",
        lazy="raise"
    )

    __table_args__ = (
        Index("idx_users_webapp_user", "webapp_user_id"),
        CheckConstraint("chy_balance >= 0", name="check_positive_chy_balance"),
    )


# =============================================================================
# TABLA: CHY_TRANSACTIONS (Ledger append-only)
# =============================================================================

class ChyTransaction(Base):
    """
    Libro Mayor (Ledger) de CHY. Una fila por mutación de saldo.

    PRINCIPIO: el saldo del usuario es la suma de todos sus `amount`.
    Esto permite reconstruir el saldo desde cero (reconciliación).

    INVARIANTES:
    - balance_after = balance_before + amount
    - idempotency_key única: el mismo evento lógico no se aplica dos veces
    - Nunca se actualiza ni se borra
    """
    __tablename__ = "chy_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    user_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False
    )
    webapp_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # ==========================================================================
    # MOVIMIENTO
    # ==========================================================================
    tx_kind: Mapped[TransactionKind] = mapped_column(
        Enum(TransactionKind, name="chy_tx_kind"),
        nullable=False
    )

    # Positivo = crédito, negativo = débito
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Evento de origen (competencia, sesión de juego, fecha del bono...)
    reference_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reference_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # ==========================================================================
    # IDEMPOTENCIA Y AUDITORÍA
    # ==========================================================================
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    client_ip: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    device_fingerprint: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamp inmutable
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    user: Mapped["User"] = relationship(back_populates="transactions", lazy="raise")

    __table_args__ = (
        Index("idx_chy_tx_user_id", "user_id"),
        Index("idx_chy_tx_kind", "tx_kind"),
        Index("idx_chy_tx_reference", "reference_type", "reference_id"),
        Index("idx_chy_tx_created_at", "created_at"),
        CheckConstraint(
            "balance_after = balance_before + amount",
            name="check_balance_equation"
        ),
        CheckConstraint("balance_after >= 0", name="check_non_negative_after"),
    )


# =============================================================================
# TABLA: RATE_LIMIT_TRACKING (Contadores de ventana fija)
# =============================================================================

class RateLimitCounter(Base):
    """
    Contador por (usuario, endpoint) de ventana fija.
    Se crea en la primera solicitud y se reinicia al expirar la ventana.
    """
    __tablename__ = "rate_limit_tracking"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(64), nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_request: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "endpoint", name="uq_rate_limit_user_endpoint"),
        Index("idx_rate_limit_last_request", "last_request"),
    )


# =============================================================================
# TABLA: GAME_SESSION_TOKENS (Anti-cheat de un solo uso)
# =============================================================================

class GameSessionToken(Base):
    """
    Token de sesión de juego: liga (usuario, juego, periodo de competencia)
    a una ventana de tiempo.

    Ciclo de vida:
        issued -> consumed(valid) | consumed(invalid) | expired

    Se muta UNA sola vez (al consumirse). Un token con consumed_at no nulo
    jamás vuelve a validarse.
    """
    __tablename__ = "game_session_tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    session_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    game_type: Mapped[str] = mapped_column(String(32), nullable=False)

    # Periodo de competencia ligado (fuente confiable de "ranked")
    competition_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    period: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    period_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    # Techo teórico calculado por el servidor para toda la ventana
    max_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Resultado del consumo (null hasta el envío del puntaje)
    consumed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_valid: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)

    __table_args__ = (
        Index("idx_session_user", "user_id"),
        Index("idx_session_expires", "expires_at"),
    )


# =============================================================================
# TABLA: SECURITY_AUDIT_LOG (Bitácora forense)
# =============================================================================

class SecurityAuditLog(Base):
    """
    Bitácora append-only de eventos de seguridad.
    Herramienta forense principal ante transacciones disputadas.
    """
    __tablename__ = "security_audit_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    severity: Mapped[AuditSeverity] = mapped_column(
        Enum(AuditSeverity, name="audit_severity"),
        default=AuditSeverity.INFO,
        nullable=False
    )
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    client_ip: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index("idx_audit_event_type", "event_type"),
        Index("idx_audit_severity", "severity"),
        Index("idx_audit_created_at", "created_at"),
    )


# =============================================================================
# EVENT LISTENERS PARA INMUTABILIDAD
# =============================================================================

@event.listens_for(ChyTransaction, "before_update")
def chy_transaction_before_update(mapper, connection, target: ChyTransaction):
    """Las entradas del ledger no se modifican jamás."""
    raise ValueError(f"Ledger entry {target.id} is immutable")


@event.listens_for(ChyTransaction, "before_delete")
def chy_transaction_before_delete(mapper, connection, target: ChyTransaction):
    """Las entradas del ledger no se borran jamás."""
    raise ValueError(f"Ledger entry {target.id} cannot be deleted")


@event.listens_for(SecurityAuditLog, "before_update")
def audit_log_before_update(mapper, connection, target: SecurityAuditLog):
    """La bitácora es append-only."""
    raise ValueError(f"Audit entry {target.id} is immutable")
