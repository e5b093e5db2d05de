"""
=============================================================================
CHY ECONOMY - Puerta de Envío de Puntajes
=============================================================================
Flujo de un puntaje que llega del cliente (no confiable):

1. Rate Limiter admite o rechaza ("flappy/score")
2. Con token: el Session Manager valida y consume; el periodo ligado a la
   sesión decide si es ranked
3. Sin token: práctica no-ranked. Un pedido ranked sin token se rechaza,
   salvo que el modo heredado ALLOW_SESSIONLESS_RANKED esté activo

La bandera ranked del cliente nunca asciende un envío a ranked.
=============================================================================
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..models import AuditSeverity
from .audit import AuditSink
from .errors import InvalidScore, InvalidSession, RateLimited
from .security import RateLimiter, SecurityContext
from .sessions import SessionManager

logger = logging.getLogger(__name__)

SCORE_ENDPOINT = "flappy/score"


@dataclass(frozen=True)
class ScoreVerdict:
    """Decisión del servidor sobre un puntaje aceptado."""
    score: int
    ranked: bool
    game_type: Optional[str] = None
    competition_id: Optional[str] = None
    period: Optional[str] = None
    period_date: Optional[str] = None
    legacy: bool = False  # aceptado por el modo heredado sin sesión


class ScoreGate:
    """Admite puntajes combinando rate limiting y sesiones de un solo uso."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        sessions: SessionManager,
        audit: AuditSink,
        allow_sessionless_ranked: bool = False,
    ):
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.audit = audit
        self.allow_sessionless_ranked = allow_sessionless_ranked

    async def submit(
        self,
        context: SecurityContext,
        score: int,
        session_token: Optional[str] = None,
        ranked_requested: bool = False,
    ) -> ScoreVerdict:
        """
        Raises:
            InvalidScore, RateLimited, InvalidSession, SessionAlreadyUsed,
            SessionExpired, ImplausibleScore
        """
        if score < 0:
            raise InvalidScore(f"Negative score {score}")

        decision = await self.rate_limiter.check_and_consume(context.user_id, SCORE_ENDPOINT)
        if not decision.allowed:
            await self.audit.record(
                "rate_limited", AuditSeverity.INFO,
                f"{SCORE_ENDPOINT} throttled, retry after {decision.retry_after}s",
                context,
            )
            raise RateLimited(SCORE_ENDPOINT, decision.retry_after)

        if session_token:
            record = await self.sessions.validate_and_consume(
                session_token, context.user_id, score, context
            )
            return ScoreVerdict(
                score=score,
                ranked=record.is_ranked,
                game_type=record.game_type,
                competition_id=record.competition_id,
                period=record.period,
                period_date=record.period_date,
            )

        if not ranked_requested:
            return ScoreVerdict(score=score, ranked=False)

        if not self.allow_sessionless_ranked:
            await self.audit.record(
                "ranked_without_session", AuditSeverity.WARNING,
                f"Ranked score {score} submitted without a session token",
                context,
            )
            raise InvalidSession("Ranked submission requires a game session")

        # TODO: retirar cuando los clientes anteriores a las sesiones de juego
        # dejen de estar soportados
        logger.warning("Legacy sessionless ranked score accepted for %s", context.user_id)
        await self.audit.record(
            "legacy_ranked_without_session", AuditSeverity.WARNING,
            f"Ranked score {score} accepted without session (legacy mode)",
            context,
        )
        return ScoreVerdict(score=score, ranked=True, legacy=True)
