"""
paygate/features/resources/service.py

Catalogue of protected resources (gate chats) and their price configuration.
"""

from datetime import datetime
from typing import List, Optional
import logging

from sqlalchemy import select, insert, update

from paygate.core.config import settings
from paygate.core.database import get_db_session, resources, utc_now, ensure_utc
from paygate.core.errors import NotFoundError, ValidationError
from paygate.features.ledger.address import normalize_address
from paygate.models.resource import Resource


logger = logging.getLogger(__name__)


def _row_to_resource(row) -> Resource:
    return Resource(
        resource_id=row.resource_id,
        title=row.title,
        price=row.price,
        tolerance_bps=row.tolerance_bps,
        access_period_seconds=row.access_period_seconds,
        beneficiary_address=row.beneficiary_address,
        is_active=bool(row.is_active),
        created_at=ensure_utc(row.created_at),
    )


def register_resource(
    resource_id: int,
    title: str,
    price: int,
    *,
    tolerance_bps: Optional[int] = None,
    access_period_seconds: Optional[int] = None,
    beneficiary_address: Optional[str] = None,
    is_active: bool = True,
    now: Optional[datetime] = None,
) -> Resource:
    """Create or update a resource."""
    if price <= 0:
        raise ValidationError("price must be positive")
    bps = settings.DEFAULT_TOLERANCE_BPS if tolerance_bps is None else tolerance_bps
    if not 0 <= bps < 10000:
        raise ValidationError("tolerance_bps must be in [0, 10000)")
    if access_period_seconds is not None and access_period_seconds <= 0:
        access_period_seconds = None
    beneficiary = normalize_address(beneficiary_address) if beneficiary_address else None

    ts = now or utc_now()
    values = dict(
        title=title,
        price=price,
        tolerance_bps=bps,
        access_period_seconds=access_period_seconds,
        beneficiary_address=beneficiary,
        is_active=is_active,
        updated_at=ts,
    )
    with get_db_session() as session:
        existing = session.execute(
            select(resources.c.resource_id).where(resources.c.resource_id == resource_id)
        ).first()
        if existing:
            session.execute(update(resources).where(resources.c.resource_id == resource_id).values(**values))
        else:
            session.execute(insert(resources).values(resource_id=resource_id, created_at=ts, **values))
        row = session.execute(select(resources).where(resources.c.resource_id == resource_id)).first()
        resource = _row_to_resource(row)

    logger.info(
        "[resources] registered",
        extra={"resource_id": resource_id, "status": "active" if is_active else "inactive"},
    )
    return resource


def get_resource(resource_id: int) -> Optional[Resource]:
    with get_db_session() as session:
        row = session.execute(select(resources).where(resources.c.resource_id == resource_id)).first()
        return _row_to_resource(row) if row else None


def require_resource(resource_id: int) -> Resource:
    resource = get_resource(resource_id)
    if resource is None:
        raise NotFoundError(f"Resource {resource_id} not found")
    return resource


def list_active_resources() -> List[Resource]:
    with get_db_session() as session:
        rows = session.execute(
            select(resources).where(resources.c.is_active.is_(True)).order_by(resources.c.resource_id)
        ).fetchall()
        return [_row_to_resource(r) for r in rows]
