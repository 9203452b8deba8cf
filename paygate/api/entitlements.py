"""
Payment intent and entitlement lookup.

POST /v1/entitlements records the intent to pay and returns everything a
wallet needs to make the payment.
"""

import logging
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from paygate.core.config import settings
from paygate.core.errors import AppError, NotFoundError, ValidationError
from paygate.features.contracts.escrow import minimum_accepted
from paygate.features.deployments.service import get_deployment
from paygate.features.entitlements import service as entitlement_store
from paygate.features.ledger.address import Address
from paygate.features.ledger import wire
from paygate.features.resources.service import require_resource
from paygate.models.entitlement import Entitlement

logger = logging.getLogger("paygate")

router = APIRouter(prefix="/v1/entitlements", tags=["entitlements"])


class IntentRequest(BaseModel):
    subject_id: int
    resource_id: int
    subject_address: Optional[str] = Field(default=None, description="Payer wallet, if known")


class PaymentInstructions(BaseModel):
    contract_address: str
    amount: int = Field(description="Nanotons")
    amount_ton: str
    minimum_amount: int
    marker: str
    payload: str = Field(description="Base64 BOC of the text comment")
    link: str


class IntentResponse(BaseModel):
    entitlement: Entitlement
    payment: PaymentInstructions


@router.post("", response_model=IntentResponse)
def express_intent(req: IntentRequest):
    resource = require_resource(req.resource_id)
    if not resource.is_active:
        raise ValidationError(f"Resource {req.resource_id} is not accepting payments")
    if req.subject_address and not Address.is_valid(req.subject_address):
        raise ValidationError("subject_address is not a valid address")

    deployment = get_deployment(req.resource_id)
    if deployment is None:
        raise AppError(
            f"No escrow contract deployed for resource {req.resource_id}",
            code="not_deployed",
            status_code=409,
        )

    ent = entitlement_store.express_intent(
        req.subject_id,
        req.resource_id,
        price_expected=resource.price,
        tolerance_bps=resource.tolerance_bps,
        contract_address=deployment.contract_address,
        subject_address=req.subject_address,
    )

    friendly = Address.parse(deployment.contract_address).to_string(
        bounceable=True, test_only=settings.LEDGER_NETWORK == "testnet"
    )
    marker = settings.PAYMENT_MARKER
    return IntentResponse(
        entitlement=ent,
        payment=PaymentInstructions(
            contract_address=friendly,
            amount=resource.price,
            amount_ton=wire.from_nano(resource.price),
            minimum_amount=minimum_accepted(resource.price, resource.tolerance_bps),
            marker=marker,
            payload=wire.subscribe_payload(marker),
            link=wire.transfer_link(friendly, resource.price, marker),
        ),
    )


@router.get("/{subject_id}/{resource_id}", response_model=Entitlement)
def get_entitlement(subject_id: int, resource_id: int):
    ent = entitlement_store.find_entitlement(subject_id, resource_id)
    if ent is None:
        raise NotFoundError(f"No entitlement for subject {subject_id} on resource {resource_id}")
    return ent
