"""
=============================================================================
CHY ECONOMY - Sesiones de Juego de Un Solo Uso (Anti-Cheat)
=============================================================================
Un token de sesión liga (usuario, juego, periodo de competencia) a una
ventana de tiempo. Se emite al iniciar la partida, el cliente lo devuelve
opaco con el puntaje y se consume exactamente una vez.

    issued -> consumed(valid) | consumed(invalid) | expired

La expiración se evalúa de forma perezosa al validar; no hay barrido en
segundo plano (purge_expired es solo higiene de almacenamiento).

El token es una credencial al portador: quien lo roba puede enviar UN
puntaje como la víctima.
=============================================================================
"""

import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import AuditSeverity, GameSessionToken, as_utc, utcnow
from .audit import AuditSink
from .errors import (
    ImplausibleScore,
    InvalidScore,
    InvalidSession,
    SessionAlreadyUsed,
    SessionExpired,
    StorageFailure,
)
from .security import SecurityContext

logger = logging.getLogger(__name__)


def generate_session_token() -> str:
    """64 caracteres hex de aleatoriedad criptográfica."""
    return secrets.token_hex(32)


@dataclass(frozen=True)
class IssuedSession:
    """Lo que recibe el cliente al iniciar la partida."""
    token: str
    expires_at: datetime
    max_score: Optional[int] = None


@dataclass(frozen=True)
class SessionRecord:
    """
    Sesión consumida con éxito.

    El periodo ligado es la ÚNICA fuente confiable de "ranked": nunca se
    confía en una bandera ranked enviada por el cliente.
    """
    user_id: str
    game_type: str
    competition_id: Optional[str]
    period: Optional[str]
    period_date: Optional[str]
    issued_at: datetime
    consumed_at: datetime
    score: int
    max_plausible_score: Optional[int]

    @property
    def is_ranked(self) -> bool:
        return self.competition_id is not None and self.period is not None


class SessionManager:
    """
    Emite, valida y consume tokens de sesión de juego.

    score_rate_caps: puntos máximos por segundo de juego por tipo de juego.
    Los juegos sin tope configurado no aplican el límite de plausibilidad.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditSink,
        expiry_seconds: int = 600,
        score_rate_caps: Optional[Mapping[str, float]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.audit = audit
        self.expiry = timedelta(seconds=expiry_seconds)
        self.score_rate_caps: Dict[str, float] = dict(score_rate_caps or {"flappy": 5.0})
        self.clock = clock

    def max_plausible_score(self, game_type: str, elapsed_seconds: float) -> Optional[int]:
        """ceil(segundos transcurridos x tope del juego); None si el juego no tiene tope."""
        rate = self.score_rate_caps.get(game_type)
        if rate is None:
            return None
        return math.ceil(max(elapsed_seconds, 0.0) * rate)

    # -------------------------------------------------------------------------
    # Emisión
    # -------------------------------------------------------------------------

    async def create_session(
        self,
        user_id: str,
        game_type: str,
        competition_id: Optional[str] = None,
        period: Optional[str] = None,
        period_date: Optional[str] = None,
    ) -> IssuedSession:
        """Emite un token nuevo válido por la ventana de expiración configurada."""
        now = self.clock()
        token = generate_session_token()
        expires_at = now + self.expiry
        max_score = self.max_plausible_score(game_type, self.expiry.total_seconds())

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(GameSessionToken(
                        session_token=token,
                        user_id=user_id,
                        game_type=game_type,
                        competition_id=competition_id,
                        period=period,
                        period_date=period_date,
                        max_score=max_score,
                        issued_at=now,
                        expires_at=expires_at,
                    ))
        except SQLAlchemyError as exc:
            logger.exception("Failed to create game session for %s", user_id)
            raise StorageFailure(str(exc)) from exc

        logger.info("Game session issued: user=%s game=%s competition=%s",
                    user_id, game_type, competition_id)
        return IssuedSession(token=token, expires_at=expires_at, max_score=max_score)

    # -------------------------------------------------------------------------
    # Validación y consumo
    # -------------------------------------------------------------------------

    async def validate_and_consume(
        self,
        token: str,
        user_id: str,
        score: int,
        context: Optional[SecurityContext] = None,
    ) -> SessionRecord:
        """
        Puerta anti-cheat. Cualquier falla es terminal para el envío.

        1. Token inexistente o de otro usuario -> InvalidSession
        2. Ya consumido -> SessionAlreadyUsed (intento de replay)
        3. Expirado -> SessionExpired
        4. Puntaje > ceil(segundos x tope) -> ImplausibleScore (se quema el token)
        5. Éxito: consumed_at, score, is_valid=True de forma atómica
        """
        if score < 0:
            raise InvalidScore(f"Negative score {score}")

        context = context or SecurityContext(user_id=user_id)

        try:
            async with self.session_factory() as session:
                row = await session.scalar(
                    select(GameSessionToken).where(GameSessionToken.session_token == token)
                )
        except SQLAlchemyError as exc:
            logger.exception("Session lookup failed")
            raise StorageFailure(str(exc)) from exc

        # 1. Propietario
        if row is None:
            await self.audit.record(
                "invalid_session", AuditSeverity.WARNING,
                "Unknown session token submitted", context,
            )
            raise InvalidSession("Invalid session token")

        if row.user_id != user_id:
            await self.audit.record(
                "session_user_mismatch", AuditSeverity.WARNING,
                f"Session {row.id} of user {row.user_id} submitted by {user_id}",
                context,
            )
            raise InvalidSession("Session user mismatch")

        # 2. Un solo uso
        if row.consumed_at is not None:
            await self._reject_replay(row, score, context)

        # 3. Expiración (perezosa)
        now = self.clock()
        if now > as_utc(row.expires_at):
            await self.audit.record(
                "session_expired", AuditSeverity.INFO,
                f"Session {row.id} expired at {as_utc(row.expires_at).isoformat()}",
                context,
            )
            raise SessionExpired(f"Session {row.id} expired")

        # 4. Plausibilidad
        elapsed = (now - as_utc(row.issued_at)).total_seconds()
        max_score = self.max_plausible_score(row.game_type, elapsed)

        if max_score is not None and score > max_score:
            await self._consume(row, now, score, is_valid=False, context=context)
            await self.audit.record(
                "suspicious_score", AuditSeverity.CRITICAL,
                f"Score {score} exceeds max possible {max_score} "
                f"for {elapsed:.1f}s {row.game_type} session {row.id}",
                context,
            )
            raise ImplausibleScore(score, max_score, elapsed)

        # 5. Consumo
        await self._consume(row, now, score, is_valid=True, context=context)

        return SessionRecord(
            user_id=row.user_id,
            game_type=row.game_type,
            competition_id=row.competition_id,
            period=row.period,
            period_date=row.period_date,
            issued_at=as_utc(row.issued_at),
            consumed_at=now,
            score=score,
            max_plausible_score=max_score,
        )

    async def purge_expired(self, older_than: datetime) -> int:
        """Higiene: borra tokens cuya expiración es anterior a `older_than`."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(GameSessionToken).where(GameSessionToken.expires_at < older_than)
                )
        logger.info("Purged %s expired game sessions", result.rowcount)
        return result.rowcount

    # -------------------------------------------------------------------------
    # Internos
    # -------------------------------------------------------------------------

    async def _consume(
        self,
        row: GameSessionToken,
        now: datetime,
        score: int,
        is_valid: bool,
        context: SecurityContext,
    ) -> None:
        """
        Marca el token como consumido solo si nadie lo consumió antes
        (UPDATE ... WHERE consumed_at IS NULL). Perder la carrera es replay.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(GameSessionToken)
                        .where(
                            GameSessionToken.id == row.id,
                            GameSessionToken.consumed_at.is_(None),
                        )
                        .values(consumed_at=now, score=score, is_valid=is_valid)
                    )
        except SQLAlchemyError as exc:
            logger.exception("Failed to consume session %s", row.id)
            raise StorageFailure(str(exc)) from exc

        if result.rowcount != 1:
            await self._reject_replay(row, score, context)

    async def _reject_replay(
        self,
        row: GameSessionToken,
        score: int,
        context: SecurityContext,
    ) -> None:
        logger.info("Session already used: %s", row.id)
        await self.audit.record(
            "replay_attempt", AuditSeverity.WARNING,
            f"Session {row.id} already used; resubmitted score {score}",
            context,
        )
        raise SessionAlreadyUsed(f"Session {row.id} already used (replay attempt)")
