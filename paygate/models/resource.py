"""
paygate/models/resource.py
Protected resources and their escrow deployments.
"""

from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import Optional


class Resource(BaseModel):
    """A gated chat with its price configuration."""

    model_config = ConfigDict(frozen=True)

    resource_id: int
    title: str
    price: int = Field(gt=0, description="Nanotons")
    tolerance_bps: int = Field(ge=0, lt=10000)
    access_period_seconds: Optional[int] = Field(default=None, description="None means lifetime access")
    beneficiary_address: Optional[str] = None
    is_active: bool = True
    created_at: datetime

    @property
    def is_lifetime(self) -> bool:
        return not self.access_period_seconds


class DeployedContract(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource_id: int
    contract_address: str
    deployed_at: datetime
