"""
=============================================================================
CHY ECONOMY - Punto de Entrada Principal (FastAPI)
=============================================================================
Capa HTTP delgada sobre los servicios de integridad de la moneda CHY.

La identidad del usuario llega en el header X-User-Id, puesto por el
gateway que autentica; este servicio no autentica jugadores.

Integra:
- Ledger idempotente, rate limiter y sesiones de juego de un solo uso
- Manejo uniforme de EconomyError -> {"success": false, "code", "error"}
- Middleware de seguridad y CORS
=============================================================================
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncEngine

from .. import __version__
from ..config import Settings, get_settings
from ..database import create_session_factory, create_tables, engine_from_settings
from ..models import utcnow
from .admin import router as admin_router
from .audit import AuditSink
from .economy import EconomyService
from .errors import EconomyError, RateLimited
from .ledger import Ledger
from .scoring import ScoreGate
from .security import RateLimiter, SecurityContext
from .sessions import SessionManager
from .webapp import UpstreamSync, WebappEconomyClient

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Handler de consola con el nombre del logger como etiqueta."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# CONTENEDOR DE SERVICIOS
# =============================================================================

class EconomyContainer:
    """Arma todos los componentes a partir de la configuración."""

    def __init__(
        self,
        settings: Settings,
        engine: Optional[AsyncEngine] = None,
        clock: Callable[[], datetime] = utcnow,
        webapp_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.engine = engine or engine_from_settings(settings)
        self.session_factory = create_session_factory(self.engine)

        self.audit = AuditSink(self.session_factory)
        self.ledger = Ledger(self.session_factory, self.audit, clock=clock)
        self.rate_limiter = RateLimiter(self.session_factory, settings.RATE_LIMITS, clock=clock)
        self.sessions = SessionManager(
            self.session_factory,
            self.audit,
            expiry_seconds=settings.SESSION_EXPIRY_SECONDS,
            score_rate_caps=settings.SCORE_RATE_CAPS,
            clock=clock,
        )
        self.score_gate = ScoreGate(
            self.rate_limiter,
            self.sessions,
            self.audit,
            allow_sessionless_ranked=settings.ALLOW_SESSIONLESS_RANKED,
        )
        self.economy = EconomyService(
            self.ledger,
            self.sessions,
            self.rate_limiter,
            self.audit,
            daily_bonus_amount=settings.DAILY_BONUS_AMOUNT,
            clock=clock,
        )
        self.webapp = WebappEconomyClient.from_settings(settings, transport=webapp_transport)
        self.upstream = UpstreamSync(self.webapp, self.ledger, self.audit)

    async def startup(self) -> None:
        if self.settings.CREATE_TABLES_ON_START:
            await create_tables(self.engine)
        if self.settings.ALLOW_SESSIONLESS_RANKED:
            logger.warning("Legacy mode: ranked scores without a game session are accepted")
        if not self.webapp.configured:
            logger.warning("MOBILE_API_SECRET not configured; webapp sync disabled")

    async def shutdown(self) -> None:
        await self.engine.dispose()


# =============================================================================
# SCHEMAS
# =============================================================================

class OpenAccountRequest(BaseModel):
    webapp_user_id: Optional[str] = Field(default=None, max_length=64)
    display_name: Optional[str] = Field(default=None, max_length=100)


class EnterCompetitionRequest(BaseModel):
    """Inscripción a un periodo de competencia."""
    game_type: str = Field(default="flappy", min_length=1, max_length=32)
    entry_fee: int = Field(..., gt=0)
    period: str = Field(..., min_length=1, max_length=16)  # daily, weekly
    period_date: str = Field(..., min_length=1, max_length=16)


class RefundRequest(BaseModel):
    period_date: str = Field(..., min_length=1, max_length=16)


class ScoreSubmission(BaseModel):
    score: int = Field(..., ge=0)
    session_token: Optional[str] = Field(default=None, max_length=64)
    ranked: bool = False


# =============================================================================
# DEPENDENCIAS
# =============================================================================

def get_container(request: Request) -> EconomyContainer:
    return request.app.state.container


async def get_security_context(
    request: Request,
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    x_device_fingerprint: Optional[str] = Header(default=None, alias="X-Device-Fingerprint"),
) -> SecurityContext:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return SecurityContext.from_request(request, x_user_id, x_device_fingerprint)


# =============================================================================
# APLICACIÓN FASTAPI
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    container: Optional[EconomyContainer] = None,
) -> FastAPI:
    """Fábrica de la aplicación. Los tests inyectan su propio contenedor."""
    settings = settings or (container.settings if container else get_settings())
    container = container or EconomyContainer(settings)
    configure_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting CHY economy service %s", __version__)
        await container.startup()
        yield
        logger.info("Shutting down CHY economy service")
        await container.shutdown()

    app = FastAPI(
        title="CHY Economy API",
        description="""
        ## Integridad de la moneda CHY

        - **Ledger**: exactamente una vez por clave de idempotencia, nunca saldo negativo
        - **Sesiones de juego**: tokens de un solo uso con tope de plausibilidad
        - **Rate limiting**: ventana fija por usuario y endpoint
        - **Auditoría**: bitácora append-only con severidad
        """,
        version=__version__,
        lifespan=lifespan,
    )
    app.state.container = container

    # -------------------------------------------------------------------------
    # MIDDLEWARE
    # -------------------------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Agrega headers de seguridad a las respuestas."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response

    # -------------------------------------------------------------------------
    # ERRORES
    # -------------------------------------------------------------------------

    @app.exception_handler(EconomyError)
    async def economy_error_handler(request: Request, exc: EconomyError):
        headers = {}
        if isinstance(exc, RateLimited):
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        logger.warning("Invalid request on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=400,
            content={"success": False, "code": "INVALID_REQUEST", "error": "Invalid request"},
        )

    # -------------------------------------------------------------------------
    # HEALTH
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": "chy-economy",
            "version": __version__,
            "timestamp": time.time(),
        }

    # -------------------------------------------------------------------------
    # CUENTA Y SALDO
    # -------------------------------------------------------------------------

    @app.post("/api/economy/account")
    async def open_account(
        request: OpenAccountRequest,
        ctx: SecurityContext = Depends(get_security_context),
        container: EconomyContainer = Depends(get_container),
    ):
        user = await container.ledger.open_account(
            ctx.user_id, request.webapp_user_id, request.display_name
        )
        return {"success": True, "user_id": user.id, "balance": user.chy_balance}

    @app.get("/api/economy/balance")
    async def get_balance(
        ctx: SecurityContext = Depends(get_security_context),
        container: EconomyContainer = Depends(get_container),
    ):
        balance = await container.ledger.get_balance(ctx.user_id)
        return {"success": True, "balance": balance}

    @app.get("/api/economy/transactions")
    async def list_transactions(
        limit: int = Query(default=50, ge=1, le=200),
        ctx: SecurityContext = Depends(get_security_context),
        container: EconomyContainer = Depends(get_container),
    ):
        entries = await container.ledger.transaction_history(ctx.user_id, limit=limit)
        return {
            "success": True,
            "transactions": [
                {
                    "id": entry.id,
                    "type": entry.tx_kind.value,
                    "amount": entry.amount,
                    "balance_before": entry.balance_before,
                    "balance_after": entry.balance_after,
                    "reference_id": entry.reference_id,
                    "reference_type": entry.reference_type,
                    "created_at": entry.created_at.isoformat() if entry.created_at else None,
                }
                for entry in entries
            ],
        }

    # -------------------------------------------------------------------------
    # COMPETENCIAS Y PUNTAJES
    # -------------------------------------------------------------------------

    @app.post("/api/competitions/{competition_id}/enter")
    async def enter_competition(
        competition_id: str,
        request: EnterCompetitionRequest,
        ctx: SecurityContext = Depends(get_security_context),
        container: EconomyContainer = Depends(get_container),
    ):
        receipt = await container.economy.enter_competition(
            ctx,
            competition_id,
            request.game_type,
            request.entry_fee,
            request.period,
            request.period_date,
        )
        return {
            "success": True,
            "session_token": receipt.session.token,
            "expires_at": receipt.session.expires_at.isoformat(),
            "max_score": receipt.session.max_score,
            "new_balance": receipt.transaction.new_balance,
            "already_paid": receipt.transaction.is_duplicate,
        }

    @app.post("/api/competitions/{competition_id}/refund")
    async def refund_entry(
        competition_id: str,
        request: RefundRequest,
        ctx: SecurityContext = Depends(get_security_context),
        container: EconomyContainer = Depends(get_container),
    ):
        result = await container.economy.refund_entry(ctx, competition_id, request.period_date)
        return {
            "success": True,
            "new_balance": result.new_balance,
            "is_duplicate": result.is_duplicate,
        }

    @app.post("/api/scores")
    async def submit_score(
        request: ScoreSubmission,
        ctx: SecurityContext = Depends(get_security_context),
        container: EconomyContainer = Depends(get_container),
    ):
        verdict = await container.score_gate.submit(
            ctx, request.score, request.session_token, request.ranked
        )
        return {
            "success": True,
            "score": verdict.score,
            "ranked": verdict.ranked,
            "competition_id": verdict.competition_id,
            "period": verdict.period,
            "period_date": verdict.period_date,
        }

    @app.post("/api/daily-bonus/claim")
    async def claim_daily_bonus(
        ctx: SecurityContext = Depends(get_security_context),
        container: EconomyContainer = Depends(get_container),
    ):
        result = await container.economy.claim_daily_bonus(ctx)
        return {
            "success": True,
            "claimed": not result.is_duplicate,
            "new_balance": result.new_balance,
        }

    app.include_router(admin_router)
    return app
