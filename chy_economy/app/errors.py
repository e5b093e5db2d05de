"""
=============================================================================
CHY ECONOMY - Taxonomía de Errores
=============================================================================
Cada falla lleva un código estable y un mensaje legible para el usuario.
El texto crudo de la BD solo viaja en `detail`, que nunca sale en una
respuesta HTTP.
=============================================================================
"""

from typing import Optional


class EconomyError(Exception):
    """Base de todas las fallas tipadas del sistema."""

    code = "ECONOMY_ERROR"
    message = "Request could not be processed"
    http_status = 400
    retryable = False

    def __init__(self, detail: str = "", **extra):
        super().__init__(detail or self.message)
        self.detail = detail or self.message
        self.extra = extra

    def to_dict(self) -> dict:
        """Cuerpo de respuesta seguro para el cliente."""
        return {"success": False, "code": self.code, "error": self.message}


# =============================================================================
# LEDGER
# =============================================================================

class InsufficientBalance(EconomyError):
    """Regla de negocio: el débito dejaría el saldo en negativo."""
    code = "INSUFFICIENT_BALANCE"
    message = "Not enough balance"
    http_status = 402

    def __init__(self, current_balance: int, amount: int):
        super().__init__(
            f"Insufficient balance: have {current_balance}, need {abs(amount)}",
            current_balance=current_balance,
            amount=amount,
        )
        self.current_balance = current_balance
        self.amount = amount


class AccountNotFound(EconomyError):
    code = "ACCOUNT_NOT_FOUND"
    message = "Account not found"
    http_status = 404


class EntryNotFound(EconomyError):
    """No existe la inscripción que se pretende devolver."""
    code = "ENTRY_NOT_FOUND"
    message = "No paid entry found for this competition"
    http_status = 404


class IdempotencyConflict(EconomyError):
    """La clave explícita ya pertenece a una entrada de otro usuario o tipo."""
    code = "IDEMPOTENCY_CONFLICT"
    message = "Request conflicts with a previous transaction"
    http_status = 409


class LedgerBusy(EconomyError):
    """Timeout o deadlock esperando el lock de la fila. Reintentable."""
    code = "LEDGER_BUSY"
    message = "Please try again"
    http_status = 503
    retryable = True


class StorageFailure(EconomyError):
    """Falla de infraestructura. Debe disparar alertas."""
    code = "STORAGE_FAILURE"
    message = "Service temporarily unavailable"
    http_status = 503


# =============================================================================
# ANTI-CHEAT
# =============================================================================

class InvalidSession(EconomyError):
    code = "INVALID_SESSION"
    message = "Invalid game session"
    http_status = 403


class SessionAlreadyUsed(EconomyError):
    code = "SESSION_ALREADY_USED"
    message = "This game session was already submitted"
    http_status = 409


class SessionExpired(EconomyError):
    code = "SESSION_EXPIRED"
    message = "Session expired, please restart the game"
    http_status = 410


class InvalidScore(EconomyError):
    """Puntaje mal formado (negativo)."""
    code = "INVALID_SCORE"
    message = "Score must be a non-negative integer"
    http_status = 400


class ImplausibleScore(EconomyError):
    code = "SCORE_REJECTED"
    message = "Score validation failed"
    http_status = 422

    def __init__(self, score: int, max_score: int, elapsed_seconds: float):
        super().__init__(
            f"Score {score} exceeds max possible {max_score} "
            f"for {elapsed_seconds:.1f}s session",
            score=score,
            max_score=max_score,
            elapsed_seconds=elapsed_seconds,
        )
        self.score = score
        self.max_score = max_score
        self.elapsed_seconds = elapsed_seconds


# =============================================================================
# THROTTLING / UPSTREAM
# =============================================================================

class RateLimited(EconomyError):
    code = "RATE_LIMITED"
    message = "Too many requests, please try again later"
    http_status = 429

    def __init__(self, endpoint: str, retry_after: int):
        super().__init__(f"Rate limit exceeded on {endpoint}", retry_after=retry_after)
        self.endpoint = endpoint
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class UpstreamError(EconomyError):
    code = "UPSTREAM_ERROR"
    message = "Upstream economy service unavailable"
    http_status = 502

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail, status_code=status_code)
        self.status_code = status_code
