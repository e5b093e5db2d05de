"""
Derivación determinística de claves de idempotencia.

Dos solicitudes que describen el mismo evento lógico el mismo día UTC
colapsan en una sola clave. No es a prueba de colisiones entre eventos
distintos que comparten (usuario, tipo, referencia, monto, día): en esos
casos el llamador debe pasar una clave explícita.
"""

import hashlib
from datetime import date
from typing import Optional, Union

from ..models import TransactionKind, utcnow

KEY_LENGTH = 32


def _digest(data: str) -> str:
    return hashlib.sha256(data.encode()).hexdigest()[:KEY_LENGTH]


def derive_idempotency_key(
    user_id: str,
    kind: Union[TransactionKind, str],
    reference_id: Optional[str],
    amount: int,
    day: Optional[date] = None,
) -> str:
    """
    SHA256("user:kind:reference:amount:YYYY-MM-DD") truncado a 32 hex.

    Args:
        user_id: Usuario que recibe la mutación
        kind: Tipo de transacción
        reference_id: Evento de origen (None equivale a "")
        amount: Monto con signo
        day: Día calendario UTC (por defecto, hoy)
    """
    kind_value = kind.value if isinstance(kind, TransactionKind) else str(kind)
    day = day or utcnow().date()
    data = f"{user_id}:{kind_value}:{reference_id or ''}:{amount}:{day.isoformat()}"
    return _digest(data)


def derive_payout_key(competition_id: str, rank: int) -> str:
    """Clave explícita para el premio de un puesto: un pago por (competencia, puesto)."""
    return _digest(f"{TransactionKind.PRIZE_PAYOUT.value}:{competition_id}:rank:{rank}")


def derive_entry_key(user_id: str, competition_id: str, period_date: str, refunds: int = 0) -> str:
    """
    Clave explícita de una inscripción. `refunds` es cuántas devoluciones
    tiene ya el usuario en ese periodo: tras una devolución la siguiente
    inscripción es un cobro nuevo, no la repetición del anterior.
    """
    return _digest(
        f"{TransactionKind.ENTRY_FEE.value}:{user_id}:{competition_id}:{period_date}:{refunds}"
    )


def derive_refund_key(user_id: str, competition_id: str, period_date: str, refunds: int = 0) -> str:
    """Clave explícita de la devolución número `refunds` (desde 0) de un periodo."""
    return _digest(
        f"{TransactionKind.REFUND.value}:{user_id}:{competition_id}:{period_date}:{refunds}"
    )
