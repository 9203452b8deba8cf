"""
Admin-only operations router.
Requires X-Admin-Key header for all endpoints.
Handles resource registration, revocation, deployment sync and on-ledger verification.
"""

import logging
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from paygate.api.deps import get_engine
from paygate.core.admin_auth import require_admin, AdminActor
from paygate.core.errors import ValidationError
from paygate.features.entitlements import service as entitlement_store
from paygate.features.engine import Engine
from paygate.features.ledger.address import Address
from paygate.features.resources.service import register_resource, require_resource
from paygate.models.entitlement import Entitlement, Payment
from paygate.models.resource import Resource

logger = logging.getLogger("paygate.admin")

router = APIRouter(prefix="/v1/admin", tags=["admin"])


# ============================================================================
# Pydantic Models
# ============================================================================

class ResourceRequest(BaseModel):
    resource_id: int
    title: str = Field(..., min_length=1)
    price: int = Field(..., gt=0, description="Nanotons")
    tolerance_bps: Optional[int] = Field(default=None, ge=0, lt=10000)
    access_period_seconds: Optional[int] = Field(default=None, description="Omit for lifetime access")
    beneficiary_address: Optional[str] = None
    is_active: bool = True


class RevokeRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class DeploymentSyncResponse(BaseModel):
    resource_id: int
    contract_address: str
    deployed: bool
    recorded: bool
    registration_payload: Optional[str] = None
    deploy_link: Optional[str] = None


class LedgerVerification(BaseModel):
    entitlement: Entitlement
    payments: List[Payment]
    contract_address: Optional[str]
    subject_address: Optional[str]
    on_ledger_active: Optional[bool] = None
    on_ledger_expiry: Optional[int] = None
    consistent: Optional[bool] = None


# ============================================================================
# Endpoints
# ============================================================================

@router.post("/resources", response_model=Resource)
def upsert_resource(req: ResourceRequest, actor: AdminActor = Depends(require_admin)):
    if req.beneficiary_address and not Address.is_valid(req.beneficiary_address):
        raise ValidationError("beneficiary_address is not a valid address")
    resource = register_resource(
        req.resource_id,
        req.title,
        req.price,
        tolerance_bps=req.tolerance_bps,
        access_period_seconds=req.access_period_seconds,
        beneficiary_address=req.beneficiary_address,
        is_active=req.is_active,
    )
    logger.info(f"[admin] resource upserted by {actor.actor_id}", extra={"resource_id": req.resource_id})
    return resource


@router.post("/entitlements/{entitlement_id}/revoke", response_model=Entitlement)
def revoke_entitlement(entitlement_id: int, req: RevokeRequest, actor: AdminActor = Depends(require_admin)):
    ent = entitlement_store.revoke(entitlement_id, req.reason)
    logger.warning(f"[admin] entitlement revoked by {actor.actor_id}", extra={"entitlement_id": entitlement_id})
    return ent


@router.post("/deployments/{resource_id}/sync", response_model=DeploymentSyncResponse)
def sync_deployment(
    resource_id: int,
    actor: AdminActor = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    resource = require_resource(resource_id)
    status = engine.registry.sync(resource)
    return DeploymentSyncResponse(**status.__dict__)


@router.get("/entitlements/{entitlement_id}/ledger", response_model=LedgerVerification)
def verify_on_ledger(
    entitlement_id: int,
    actor: AdminActor = Depends(require_admin),
    engine: Engine = Depends(get_engine),
):
    """Compare the stored entitlement with the escrow's own record of the payer."""
    ent = entitlement_store.require_entitlement(entitlement_id)
    payments = entitlement_store.list_payments(entitlement_id)
    subject_address = ent.subject_address or next((p.from_address for p in payments if p.from_address), None)

    result = LedgerVerification(
        entitlement=ent,
        payments=payments,
        contract_address=ent.contract_address,
        subject_address=subject_address,
    )
    if not ent.contract_address or not subject_address:
        return result

    subject = Address.parse(subject_address)
    active_stack = engine.ledger.run_get_method(ent.contract_address, "isActive", [subject])
    expiry_stack = engine.ledger.run_get_method(ent.contract_address, "getExpiry", [subject])
    result.on_ledger_active = bool(active_stack and active_stack[0])
    result.on_ledger_expiry = int(expiry_stack[0]) if expiry_stack else None
    result.consistent = result.on_ledger_active == (ent.status == "active")
    return result
