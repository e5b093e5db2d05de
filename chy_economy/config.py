"""
=============================================================================
CHY ECONOMY - Configuración
=============================================================================
Parámetros ajustables por entorno (prefijo CHY_). Las tablas fijas que no
son perillas de despliegue (porcentajes de premios, tipos de transacción)
viven como constantes de clase en sus módulos.
=============================================================================
"""

from functools import lru_cache
from typing import Dict

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitRule(BaseModel):
    """Límite de solicitudes para un endpoint."""
    max_requests: int = Field(..., ge=1)
    window_seconds: float = Field(..., gt=0)


DEFAULT_RATE_LIMITS: Dict[str, RateLimitRule] = {
    "flappy/enter": RateLimitRule(max_requests=5, window_seconds=60),
    "flappy/score": RateLimitRule(max_requests=30, window_seconds=60),
    "economy/bonus": RateLimitRule(max_requests=3, window_seconds=60),
    "default": RateLimitRule(max_requests=60, window_seconds=60),
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHY_",
        env_file=".env",
        extra="ignore",
    )

    # Base de datos
    DATABASE_URL: str = "sqlite+aiosqlite:///./var/chy_economy.db"
    DB_ECHO: bool = False
    CREATE_TABLES_ON_START: bool = True

    # Sesiones de juego (anti-cheat)
    SESSION_EXPIRY_SECONDS: int = Field(default=600, gt=0)
    # Puntos máximos por segundo de juego, por tipo de juego
    SCORE_RATE_CAPS: Dict[str, float] = Field(default_factory=lambda: {"flappy": 5.0})
    # Modo heredado para clientes antiguos: acepta ranked sin sesión
    ALLOW_SESSIONLESS_RANKED: bool = False

    # Rate limiting por endpoint
    RATE_LIMITS: Dict[str, RateLimitRule] = Field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMITS)
    )

    # Economía
    DAILY_BONUS_AMOUNT: int = Field(default=10, gt=0)

    # Servicio upstream "webapp"
    WEBAPP_URL: str = "https://roachy.games"
    WEBAPP_APP_ID: str = "roachy-games-mobile"
    MOBILE_API_SECRET: str = ""
    WEBAPP_TIMEOUT_SECONDS: float = 10.0

    # Administración
    ADMIN_API_TOKEN: str = ""

    # Logs
    LOG_LEVEL: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Instancia única de configuración (cacheada)."""
    return Settings()
