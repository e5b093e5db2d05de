"""
=============================================================================
CHY ECONOMY - Contexto de Seguridad y Rate Limiting
=============================================================================
- SecurityContext: quién actúa y desde dónde (para la bitácora)
- RateLimiter: contador de ventana fija por (usuario, endpoint) en la BD

El limitador es de ventana fija, no un log deslizante: acepta ráfagas en
el borde de la ventana a cambio de una fila por (usuario, endpoint) y una
lectura + escritura por verificación.
=============================================================================
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import DEFAULT_RATE_LIMITS, RateLimitRule
from ..models import RateLimitCounter, as_utc, utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# CONTEXTO DE SEGURIDAD
# =============================================================================

@dataclass(frozen=True)
class SecurityContext:
    """Usuario que actúa y metadatos del cliente para la auditoría."""
    user_id: str
    client_ip: str = "unknown"
    user_agent: str = "unknown"
    device_fingerprint: Optional[str] = None
    webapp_user_id: Optional[str] = None

    @classmethod
    def from_request(
        cls,
        request,
        user_id: str,
        device_fingerprint: Optional[str] = None,
    ) -> "SecurityContext":
        """
        Construye el contexto desde una request de Starlette/FastAPI.
        La IP es el primer salto de X-Forwarded-For o el peer del socket.
        """
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            client_ip = forwarded.split(",")[0].strip() or "unknown"
        else:
            client_ip = request.client.host if request.client else "unknown"

        return cls(
            user_id=user_id,
            client_ip=client_ip,
            user_agent=request.headers.get("user-agent", "unknown"),
            device_fingerprint=device_fingerprint,
        )

    @classmethod
    def system(cls, user_id: str, reason: str) -> "SecurityContext":
        """Contexto para mutaciones iniciadas por el servidor (liquidación, ajustes)."""
        return cls(user_id=user_id, client_ip="system", user_agent=reason)


# =============================================================================
# RATE LIMITER
# =============================================================================

@dataclass(frozen=True)
class RateLimitDecision:
    """Resultado de una verificación de rate limit."""
    allowed: bool
    retry_after: Optional[int] = None  # Segundos hasta poder reintentar


class RateLimiter:
    """
    Rate limiting persistente por (usuario, endpoint).

    Cada endpoint tiene su (max_requests, window_seconds); los endpoints no
    listados usan la regla "default".

    FALLA ABIERTA: ante un error de almacenamiento la solicitud se permite.
    Se prioriza la disponibilidad del juego sobre la rigidez del límite; la
    falla queda en el log porque desactiva el throttling durante la caída.
    """

    DEFAULT_ENDPOINT = "default"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        limits: Optional[Mapping[str, RateLimitRule]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.limits: Dict[str, RateLimitRule] = dict(limits or DEFAULT_RATE_LIMITS)
        if self.DEFAULT_ENDPOINT not in self.limits:
            self.limits[self.DEFAULT_ENDPOINT] = DEFAULT_RATE_LIMITS[self.DEFAULT_ENDPOINT]
        self.clock = clock

    def rule_for(self, endpoint: str) -> RateLimitRule:
        return self.limits.get(endpoint) or self.limits[self.DEFAULT_ENDPOINT]

    async def check_and_consume(self, user_id: str, endpoint: str) -> RateLimitDecision:
        """
        Registra una solicitud y decide si se admite.

        1. Sin fila -> crear con count=1, permitir
        2. Ventana expirada -> reiniciar count=1, permitir
        3. count >= max -> denegar con retry_after (mínimo 1s)
        4. En otro caso -> incrementar, permitir
        """
        rule = self.rule_for(endpoint)
        window = timedelta(seconds=rule.window_seconds)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    counter = await session.scalar(
                        select(RateLimitCounter)
                        .where(
                            RateLimitCounter.user_id == user_id,
                            RateLimitCounter.endpoint == endpoint,
                        )
                        .with_for_update()
                    )
                    now = self.clock()

                    if counter is None:
                        session.add(RateLimitCounter(
                            user_id=user_id,
                            endpoint=endpoint,
                            request_count=1,
                            window_start=now,
                            last_request=now,
                        ))
                        return RateLimitDecision(allowed=True)

                    window_start = as_utc(counter.window_start)
                    if now - window_start >= window:
                        counter.request_count = 1
                        counter.window_start = now
                        counter.last_request = now
                        return RateLimitDecision(allowed=True)

                    if counter.request_count >= rule.max_requests:
                        remaining = (window_start + window - now).total_seconds()
                        return RateLimitDecision(
                            allowed=False,
                            retry_after=max(1, math.ceil(remaining)),
                        )

                    counter.request_count += 1
                    counter.last_request = now
                    return RateLimitDecision(allowed=True)

        except SQLAlchemyError:
            logger.warning(
                "Rate limit storage failure on %s for user %s; failing open",
                endpoint, user_id,
                exc_info=True,
            )
            return RateLimitDecision(allowed=True)

    async def purge_stale(self, older_than: datetime) -> int:
        """Higiene de almacenamiento: borra contadores sin uso desde `older_than`."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(RateLimitCounter).where(RateLimitCounter.last_request < older_than)
                )
        logger.info("Purged %s stale rate limit counters", result.rowcount)
        return result.rowcount
