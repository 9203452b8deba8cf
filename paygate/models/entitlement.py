"""
paygate/models/entitlement.py
Entitlement and Payment records.
"""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import Optional, Literal


EntitlementStatus = Literal["pending", "active", "revoked"]


class Entitlement(BaseModel):
    """Right of a subject to access a resource, derived from a confirmed payment."""

    model_config = ConfigDict(frozen=True)

    id: int
    subject_id: int = Field(description="Gate user id")
    resource_id: int = Field(description="Gate chat id, also the factory key")
    status: EntitlementStatus
    price_expected: int = Field(ge=0, description="Nanotons")
    tolerance_bps: int = Field(ge=0, lt=10000)
    contract_address: Optional[str] = None
    subject_address: Optional[str] = Field(default=None, description="Payer wallet, if known")
    transaction_hash: Optional[str] = None
    created_at: datetime
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    renewal_requested_at: Optional[datetime] = None

    def is_active_at(self, now: datetime) -> bool:
        if self.status != "active":
            return False
        return self.expires_at is None or self.expires_at > now

    @property
    def awaiting_renewal(self) -> bool:
        return self.status == "active" and self.renewal_requested_at is not None

    @property
    def payment_window_start(self) -> datetime:
        """Only transactions after this instant can pay for the current intent."""
        return self.renewal_requested_at if self.awaiting_renewal else self.created_at


class Payment(BaseModel):
    """Credited ledger transaction. Insert-only."""

    model_config = ConfigDict(frozen=True)

    id: int
    entitlement_id: Optional[int] = None
    transaction_hash: str
    amount: int = Field(ge=0)
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    confirmed_at: datetime
    created_at: datetime
