"""
=============================================================================
CHY ECONOMY - Cliente de la Economía Web (roachy.games)
=============================================================================
Los saldos también existen en la webapp. Cada movimiento sincronizado:

1. Se firma con HMAC-SHA256 sobre "timestamp:usuario:monto:clave"
2. Se envía a la webapp con la misma clave de idempotencia
3. Solo si la webapp confirma, se escribe la entrada local `webapp_sync`
   con esa clave (reintentar el par completo es seguro)
=============================================================================
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx

from ..config import Settings
from ..models import AuditSeverity, TransactionKind, utcnow
from .audit import AuditSink
from .errors import UpstreamError
from .idempotency import derive_idempotency_key
from .ledger import Ledger, TransactionResult
from .security import SecurityContext

logger = logging.getLogger(__name__)


def sign_request(secret: str, timestamp: str, user_id: str, amount: int, key: str) -> str:
    message = f"{timestamp}:{user_id}:{amount}:{key}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class UpstreamBalance:
    webapp_user_id: str
    balance: int


class WebappEconomyClient:
    """Llamadas firmadas a /api/mobile/economy de la webapp."""

    BASE_PATH = "/api/mobile/economy"

    def __init__(
        self,
        base_url: str,
        app_id: str,
        secret: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.base_url = base_url.rstrip("/")
        self.app_id = app_id
        self.secret = secret
        self.timeout = timeout
        self.transport = transport
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "WebappEconomyClient":
        return cls(
            base_url=settings.WEBAPP_URL,
            app_id=settings.WEBAPP_APP_ID,
            secret=settings.MOBILE_API_SECRET,
            timeout=settings.WEBAPP_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.secret)

    def _headers(self, user_id: str, amount: int, key: str) -> Dict[str, str]:
        timestamp = str(int(self.clock().timestamp() * 1000))
        return {
            "Content-Type": "application/json",
            "X-Roachy-Timestamp": timestamp,
            "X-Roachy-Signature": sign_request(self.secret, timestamp, user_id, amount, key),
            "X-Roachy-App-Id": self.app_id,
        }

    async def _request(
        self,
        method: str,
        path: str,
        user_id: str,
        amount: int = 0,
        key: str = "",
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.configured:
            raise UpstreamError("MOBILE_API_SECRET not configured")

        headers = self._headers(user_id, amount, key)
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self.transport
        ) as client:
            try:
                response = await client.request(method, path, headers=headers, json=body)
            except httpx.HTTPError as exc:
                logger.exception("Webapp request failed: %s %s", method, path)
                raise UpstreamError(f"Failed to connect to webapp: {exc}") from exc

        content_type = response.headers.get("content-type", "")
        if "application/json" not in content_type:
            logger.error("Non-JSON response from %s: %s", path, content_type)
            raise UpstreamError("Invalid response from webapp", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            logger.error("JSON parse error from %s", path)
            raise UpstreamError("Invalid JSON response", status_code=response.status_code) from exc

        if response.is_error:
            error = data.get("error") or data.get("message") or "Request failed"
            raise UpstreamError(f"Webapp rejected {path}: {error}", status_code=response.status_code)

        return data

    async def get_balance(self, webapp_user_id: str) -> UpstreamBalance:
        data = await self._request(
            "GET", f"{self.BASE_PATH}/balance/{webapp_user_id}", webapp_user_id
        )
        try:
            return UpstreamBalance(webapp_user_id=webapp_user_id, balance=int(data["balance"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamError(f"Malformed balance payload for {webapp_user_id}") from exc

    async def deduct(self, webapp_user_id: str, amount: int, idempotency_key: str, reason: str) -> Dict[str, Any]:
        return await self._move("deduct", webapp_user_id, amount, idempotency_key, reason)

    async def credit(self, webapp_user_id: str, amount: int, idempotency_key: str, reason: str) -> Dict[str, Any]:
        return await self._move("credit", webapp_user_id, amount, idempotency_key, reason)

    async def _move(self, action: str, webapp_user_id: str, amount: int, key: str, reason: str) -> Dict[str, Any]:
        if amount <= 0:
            raise ValueError("amount must be positive")
        return await self._request(
            "POST",
            f"{self.BASE_PATH}/{action}",
            webapp_user_id,
            amount,
            key,
            body={
                "userId": webapp_user_id,
                "amount": amount,
                "idempotencyKey": key,
                "reason": reason,
            },
        )


# =============================================================================
# SINCRONIZACIÓN
# =============================================================================

class UpstreamSync:
    """Empareja cada movimiento en la webapp con una entrada local webapp_sync."""

    def __init__(self, client: WebappEconomyClient, ledger: Ledger, audit: AuditSink):
        self.client = client
        self.ledger = ledger
        self.audit = audit

    async def _webapp_user(self, context: SecurityContext) -> str:
        """Cuenta de la webapp: la del contexto o, si falta, la vinculada a la cuenta."""
        webapp_user_id = context.webapp_user_id or await self.ledger.linked_webapp_user(context.user_id)
        if not webapp_user_id:
            raise UpstreamError(f"User {context.user_id} is not linked to a webapp account")
        return webapp_user_id

    async def debit(
        self,
        context: SecurityContext,
        amount: int,
        reference_id: str,
        reference_type: str,
    ) -> TransactionResult:
        return await self._sync(context, -abs(amount), reference_id, reference_type)

    async def credit(
        self,
        context: SecurityContext,
        amount: int,
        reference_id: str,
        reference_type: str,
    ) -> TransactionResult:
        return await self._sync(context, abs(amount), reference_id, reference_type)

    async def _sync(
        self,
        context: SecurityContext,
        amount: int,
        reference_id: str,
        reference_type: str,
    ) -> TransactionResult:
        webapp_user_id = await self._webapp_user(context)
        key = derive_idempotency_key(
            context.user_id, TransactionKind.WEBAPP_SYNC, reference_id, amount,
            self.ledger.clock().date(),
        )
        reason = f"{reference_type}:{reference_id}"

        if amount < 0:
            await self.client.deduct(webapp_user_id, -amount, key, reason)
        else:
            await self.client.credit(webapp_user_id, amount, key, reason)

        return await self.ledger.execute_transaction(
            TransactionKind.WEBAPP_SYNC,
            amount,
            reference_id=reference_id,
            reference_type=reference_type,
            context=context,
            idempotency_key=key,
        )

    async def verify_against_upstream(self, context: SecurityContext) -> bool:
        """True si el saldo de la webapp coincide con el saldo local."""
        upstream = await self.client.get_balance(await self._webapp_user(context))
        local = await self.ledger.get_balance(context.user_id)
        if upstream.balance == local:
            return True

        await self.audit.record(
            "upstream_balance_mismatch",
            AuditSeverity.CRITICAL,
            f"User {context.user_id}: local={local}, webapp={upstream.balance}",
            context,
        )
        return False
