"""
paygate/models/access.py
Pending join requests and gate health reports.
"""

from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Optional, List


class PendingAccessRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    subject_id: int
    resource_id: int
    requested_at: datetime
    expires_at: datetime
    payment_prompt_sent: bool = False


class GateHealthReport(BaseModel):
    """Result of checking the gate bot's privileges on one resource."""

    model_config = ConfigDict(frozen=True)

    resource_id: int
    healthy: bool
    is_admin: bool = False
    can_invite_users: bool = False
    issues: List[str] = []
    checked_at: datetime
    error: Optional[str] = None
