"""
=============================================================================
CHY ECONOMY - Bitácora de Auditoría de Seguridad
=============================================================================
Registro append-only con severidad (info / warning / critical).

ESCRITURA BEST-EFFORT: una falla al escribir la bitácora nunca aborta la
operación que la disparó. La falla sí queda en el log local, porque la
bitácora es la herramienta forense principal ante transacciones disputadas.
=============================================================================
"""

import logging
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import AuditSeverity, SecurityAuditLog
from .security import SecurityContext

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    AuditSeverity.INFO: logging.INFO,
    AuditSeverity.WARNING: logging.WARNING,
    AuditSeverity.CRITICAL: logging.ERROR,
}


class AuditSink:
    """Escribe eventos de seguridad en su propia sesión de BD."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        event_type: str,
        severity: Union[AuditSeverity, str],
        details: str,
        context: Optional[SecurityContext] = None,
    ) -> bool:
        """
        Agrega un evento a la bitácora.

        Returns:
            True si quedó persistido, False si se perdió (ya logueado)
        """
        severity = AuditSeverity(severity)
        logger.log(
            _LOG_LEVELS[severity],
            "[%s] %s (user=%s)",
            event_type, details, context.user_id if context else None,
        )

        entry = SecurityAuditLog(
            user_id=context.user_id if context else None,
            event_type=event_type,
            severity=severity,
            details=details,
            client_ip=context.client_ip if context else None,
            user_agent=context.user_agent if context else None,
        )

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(entry)
        except Exception:
            logger.exception(
                "Failed to write audit event %s (%s): %s",
                event_type, severity.value, details,
            )
            return False

        return True
