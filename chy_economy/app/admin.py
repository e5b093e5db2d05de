"""
=============================================================================
CHY ECONOMY - Endpoints de Administración
=============================================================================
API REST para operadores:
- Reconciliación de saldo contra el ledger
- Liquidación de competencias (pago de premios por puesto)
- Ajustes manuales de saldo
=============================================================================
"""

import secrets
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from .security import SecurityContext

router = APIRouter(prefix="/api/admin", tags=["Admin"])

# =============================================================================
# SECURITY
# =============================================================================
security = HTTPBearer(auto_error=False)


async def get_current_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Verifica el bearer token de administración (CHY_ADMIN_API_TOKEN).
    Sin token configurado, la API de administración queda cerrada.
    """
    expected = request.app.state.container.settings.ADMIN_API_TOKEN
    if not expected or credentials is None or not secrets.compare_digest(
        credentials.credentials.encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return "admin"


def get_container(request: Request):
    return request.app.state.container


# =============================================================================
# SCHEMAS
# =============================================================================

class SettleRequest(BaseModel):
    """Pozo y ganadores en orden de puesto (el primero es el puesto 1)."""
    prize_pool: int = Field(..., ge=0)
    ranked_user_ids: List[str] = Field(..., min_length=1)


class AdjustRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    amount: int
    reason: str = Field(..., min_length=5, max_length=500)
    admin_id: str = Field(..., min_length=1, max_length=64)
    idempotency_key: str = Field(..., min_length=8, max_length=64)


# =============================================================================
# ENDPOINT: RECONCILIACIÓN
# =============================================================================

@router.get("/reconcile/{user_id}")
async def reconcile_user(
    user_id: str,
    admin: str = Depends(get_current_admin),
    container=Depends(get_container),
):
    """Compara el saldo guardado con la suma del ledger. No corrige nada."""
    report = await container.ledger.reconcile(user_id)
    return {"success": True, **report.to_dict(), "drift": report.drift}


# =============================================================================
# ENDPOINT: LIQUIDACIÓN
# =============================================================================

@router.post("/competitions/{competition_id}/settle")
async def settle_competition(
    competition_id: str,
    request: SettleRequest,
    admin: str = Depends(get_current_admin),
    container=Depends(get_container),
):
    """
    Paga los premios de la competencia. Reenviar el mismo pedido es seguro:
    cada (competencia, puesto) se paga una sola vez.
    """
    report = await container.economy.settle_competition(
        competition_id, request.prize_pool, request.ranked_user_ids
    )
    return {"success": report.is_complete, **report.to_dict()}


# =============================================================================
# ENDPOINT: AJUSTE MANUAL
# =============================================================================

@router.post("/adjust")
async def adjust_balance(
    request: AdjustRequest,
    admin: str = Depends(get_current_admin),
    container=Depends(get_container),
):
    if request.amount == 0:
        raise HTTPException(status_code=400, detail="Amount must be non-zero")

    result = await container.economy.admin_adjust(
        request.user_id,
        request.amount,
        request.reason,
        request.admin_id,
        idempotency_key=request.idempotency_key,
    )
    return {
        "success": True,
        "transaction_id": result.transaction_id,
        "new_balance": result.new_balance,
        "is_duplicate": result.is_duplicate,
    }


# =============================================================================
# ENDPOINT: VERIFICACIÓN CONTRA LA WEBAPP
# =============================================================================

@router.get("/upstream/verify/{user_id}")
async def verify_upstream(
    user_id: str,
    admin: str = Depends(get_current_admin),
    container=Depends(get_container),
):
    """
    Compara el saldo local con el de roachy.games para una cuenta vinculada.
    Una diferencia queda auditada como crítica; no se corrige nada.
    """
    context = SecurityContext.system(user_id, "admin:upstream_verify")
    in_sync = await container.upstream.verify_against_upstream(context)
    return {"success": True, "user_id": user_id, "in_sync": in_sync}
