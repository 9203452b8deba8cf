"""
paygate/features/entitlements/service.py

Entitlement store: the relational state machine behind access rights.

Rules:
- One row per (subject_id, resource_id).
- Transitions are pending -> active (reconciler only, under row lock) and
  active -> revoked (admin only). A renewal extends an active time-bound row
  in place; the row stays active while the renewal payment is awaited.
- A transaction hash is credited to at most one entitlement, enforced by unique
  constraints on both entitlements.transaction_hash and payments.transaction_hash.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Set
import logging

from sqlalchemy import select, insert, update, delete, and_
from sqlalchemy.exc import IntegrityError

from paygate.core.config import settings
from paygate.core.database import (
    get_db_session,
    dialect_insert,
    entitlements,
    payments,
    utc_now,
    ensure_utc,
)
from paygate.core.errors import ActivationConflictError, ConflictError, NotFoundError, ValidationError
from paygate.features.ledger.address import normalize_address
from paygate.models.entitlement import Entitlement, Payment


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditedTransaction:
    """Ledger transaction being credited to an entitlement."""
    hash: str
    amount: int
    confirmed_at: datetime
    from_address: Optional[str] = None
    to_address: Optional[str] = None


def _row_to_entitlement(row) -> Entitlement:
    return Entitlement(
        id=row.id,
        subject_id=row.subject_id,
        resource_id=row.resource_id,
        status=row.status,
        price_expected=row.price_expected,
        tolerance_bps=row.tolerance_bps,
        contract_address=row.contract_address,
        subject_address=row.subject_address,
        transaction_hash=row.transaction_hash,
        created_at=ensure_utc(row.created_at),
        activated_at=ensure_utc(row.activated_at),
        expires_at=ensure_utc(row.expires_at),
        revoked_at=ensure_utc(row.revoked_at),
        revoked_reason=row.revoked_reason,
        renewal_requested_at=ensure_utc(row.renewal_requested_at),
    )


def _row_to_payment(row) -> Payment:
    return Payment(
        id=row.id,
        entitlement_id=row.entitlement_id,
        transaction_hash=row.transaction_hash,
        amount=row.amount,
        from_address=row.from_address,
        to_address=row.to_address,
        confirmed_at=ensure_utc(row.confirmed_at),
        created_at=ensure_utc(row.created_at),
    )


def express_intent(
    subject_id: int,
    resource_id: int,
    *,
    price_expected: int,
    tolerance_bps: int,
    contract_address: Optional[str],
    subject_address: Optional[str] = None,
    lookback: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> Entitlement:
    """Create a pending entitlement, or refresh the intent on an existing row.

    Refreshing a pending row updates its price and contract snapshot but keeps
    created_at, so a payment already sent for the earlier intent still matches.
    The window restarts only once created_at has fallen outside the lookback.
    A known payer address is kept unless a new one is given.

    On an active time-bound row the intent is a renewal request: the row stays
    active and renewal_requested_at opens the payment window for the extension.

    Raises:
        ConflictError: the row is revoked, or active with lifetime access
    """
    if price_expected <= 0:
        raise ValidationError("price_expected must be positive")
    ts = now or utc_now()
    window = lookback or timedelta(hours=settings.PAYMENT_LOOKBACK_HOURS)
    contract = normalize_address(contract_address) if contract_address else None
    payer = normalize_address(subject_address) if subject_address else None
    snapshot = dict(
        price_expected=price_expected,
        tolerance_bps=tolerance_bps,
        contract_address=contract,
        updated_at=ts,
    )

    for _attempt in range(2):
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(entitlements)
                    .where(entitlements.c.subject_id == subject_id)
                    .where(entitlements.c.resource_id == resource_id)
                    .with_for_update()
                ).first()
                if row is None:
                    session.execute(
                        insert(entitlements).values(
                            subject_id=subject_id,
                            resource_id=resource_id,
                            status="pending",
                            subject_address=payer,
                            created_at=ts,
                            **snapshot,
                        )
                    )
                elif row.status == "pending":
                    values = dict(snapshot, subject_address=payer or row.subject_address)
                    if ensure_utc(row.created_at) <= ts - window:
                        values["created_at"] = ts
                    session.execute(update(entitlements).where(entitlements.c.id == row.id).values(**values))
                elif row.status == "active" and row.expires_at is not None:
                    values = dict(snapshot, subject_address=payer or row.subject_address)
                    requested = ensure_utc(row.renewal_requested_at)
                    if requested is None or requested <= ts - window:
                        values["renewal_requested_at"] = ts
                    session.execute(update(entitlements).where(entitlements.c.id == row.id).values(**values))
                else:
                    raise ConflictError(
                        f"Entitlement for subject {subject_id} on resource {resource_id} is {row.status}",
                        code=f"entitlement_{row.status}",
                    )
                fresh = session.execute(
                    select(entitlements)
                    .where(entitlements.c.subject_id == subject_id)
                    .where(entitlements.c.resource_id == resource_id)
                ).first()
                return _row_to_entitlement(fresh)
        except IntegrityError:
            # Concurrent insert for the same pair; re-read and apply the refresh path
            logger.info(
                "[entitlements] concurrent intent, retrying",
                extra={"subject_id": subject_id, "resource_id": resource_id},
            )
    raise ConflictError(f"Could not record intent for subject {subject_id} on resource {resource_id}")


def get_entitlement(entitlement_id: int) -> Optional[Entitlement]:
    with get_db_session() as session:
        row = session.execute(select(entitlements).where(entitlements.c.id == entitlement_id)).first()
        return _row_to_entitlement(row) if row else None


def require_entitlement(entitlement_id: int) -> Entitlement:
    ent = get_entitlement(entitlement_id)
    if ent is None:
        raise NotFoundError(f"Entitlement {entitlement_id} not found")
    return ent


def find_entitlement(subject_id: int, resource_id: int) -> Optional[Entitlement]:
    with get_db_session() as session:
        row = session.execute(
            select(entitlements)
            .where(entitlements.c.subject_id == subject_id)
            .where(entitlements.c.resource_id == resource_id)
        ).first()
        return _row_to_entitlement(row) if row else None


def has_active_entitlement(subject_id: int, resource_id: int, now: Optional[datetime] = None) -> bool:
    ent = find_entitlement(subject_id, resource_id)
    return ent is not None and ent.is_active_at(now or utc_now())


def list_pending(now: datetime, lookback: timedelta, limit: int = 100) -> List[Entitlement]:
    """Pending rows created within the lookback window, newest first."""
    cutoff = now - lookback
    with get_db_session() as session:
        rows = session.execute(
            select(entitlements)
            .where(entitlements.c.status == "pending")
            .where(entitlements.c.created_at > cutoff)
            .order_by(entitlements.c.created_at.desc(), entitlements.c.id.desc())
            .limit(limit)
        ).fetchall()
        return [_row_to_entitlement(r) for r in rows]


def list_renewals(now: datetime, lookback: timedelta, limit: int = 100) -> List[Entitlement]:
    """Active rows with a renewal requested within the lookback window, newest first."""
    cutoff = now - lookback
    with get_db_session() as session:
        rows = session.execute(
            select(entitlements)
            .where(entitlements.c.status == "active")
            .where(entitlements.c.renewal_requested_at > cutoff)
            .order_by(entitlements.c.renewal_requested_at.desc(), entitlements.c.id.desc())
            .limit(limit)
        ).fetchall()
        return [_row_to_entitlement(r) for r in rows]


def credited_hashes(hashes: Iterable[str]) -> Set[str]:
    """Subset of `hashes` already credited to some entitlement."""
    wanted = list({h for h in hashes if h})
    if not wanted:
        return set()
    with get_db_session() as session:
        rows = session.execute(
            select(payments.c.transaction_hash).where(payments.c.transaction_hash.in_(wanted))
        ).fetchall()
        return {r.transaction_hash for r in rows}


def activate(
    entitlement_id: int,
    tx: CreditedTransaction,
    *,
    access_period_seconds: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Entitlement:
    """Activate a pending entitlement and record its payment in one transaction.

    An active row awaiting renewal is extended instead: expires_at moves to
    max(now, expires_at) + period, the same rule the escrow applies on chain.
    transaction_hash always holds the latest credited payment.

    Raises:
        ActivationConflictError: the row is neither pending nor awaiting renewal,
            or the transaction is already credited. Nothing is written in that case.
        NotFoundError: the row does not exist.
    """
    ts = now or utc_now()
    period = timedelta(seconds=access_period_seconds) if access_period_seconds else None
    try:
        with get_db_session() as session:
            row = session.execute(
                select(entitlements).where(entitlements.c.id == entitlement_id).with_for_update()
            ).first()
            if row is None:
                raise NotFoundError(f"Entitlement {entitlement_id} not found")
            renewal = row.status == "active" and row.renewal_requested_at is not None
            if row.status != "pending" and not renewal:
                raise ActivationConflictError(f"Entitlement {entitlement_id} is {row.status}")

            already = session.execute(
                select(payments.c.id).where(payments.c.transaction_hash == tx.hash)
            ).first() or session.execute(
                select(entitlements.c.id).where(entitlements.c.transaction_hash == tx.hash)
            ).first()
            if already:
                raise ActivationConflictError(f"Transaction {tx.hash} already credited")

            if renewal:
                current = ensure_utc(row.expires_at)
                session.execute(
                    update(entitlements)
                    .where(and_(
                        entitlements.c.id == entitlement_id,
                        entitlements.c.status == "active",
                        entitlements.c.renewal_requested_at.is_not(None),
                    ))
                    .values(
                        expires_at=max(ts, current) + period if period and current else None,
                        transaction_hash=tx.hash,
                        renewal_requested_at=None,
                        updated_at=ts,
                    )
                )
            else:
                session.execute(
                    update(entitlements)
                    .where(and_(entitlements.c.id == entitlement_id, entitlements.c.status == "pending"))
                    .values(
                        status="active",
                        activated_at=ts,
                        expires_at=ts + period if period else None,
                        transaction_hash=tx.hash,
                        updated_at=ts,
                    )
                )
            result = session.execute(
                dialect_insert(session, payments)
                .values(
                    entitlement_id=entitlement_id,
                    transaction_hash=tx.hash,
                    amount=tx.amount,
                    from_address=tx.from_address,
                    to_address=tx.to_address,
                    confirmed_at=tx.confirmed_at,
                    created_at=ts,
                )
                .on_conflict_do_nothing(index_elements=["transaction_hash"])
            )
            if result.rowcount == 0:
                raise ActivationConflictError(f"Transaction {tx.hash} already credited")
            fresh = session.execute(select(entitlements).where(entitlements.c.id == entitlement_id)).first()
            activated = _row_to_entitlement(fresh)
    except IntegrityError as exc:
        raise ActivationConflictError(f"Transaction {tx.hash} already credited") from exc

    logger.info(
        "[entitlements] renewed" if renewal else "[entitlements] activated",
        extra={
            "entitlement_id": entitlement_id,
            "subject_id": activated.subject_id,
            "resource_id": activated.resource_id,
            "transaction_hash": tx.hash,
        },
    )
    return activated


def revoke(entitlement_id: int, reason: str, now: Optional[datetime] = None) -> Entitlement:
    """Admin action: active -> revoked."""
    ts = now or utc_now()
    with get_db_session() as session:
        row = session.execute(
            select(entitlements).where(entitlements.c.id == entitlement_id).with_for_update()
        ).first()
        if row is None:
            raise NotFoundError(f"Entitlement {entitlement_id} not found")
        if row.status != "active":
            raise ConflictError(f"Only active entitlements can be revoked (status={row.status})")
        session.execute(
            update(entitlements)
            .where(entitlements.c.id == entitlement_id)
            .values(status="revoked", revoked_at=ts, revoked_reason=reason, updated_at=ts)
        )
        fresh = session.execute(select(entitlements).where(entitlements.c.id == entitlement_id)).first()
        revoked = _row_to_entitlement(fresh)

    logger.warning(
        "[entitlements] revoked",
        extra={"entitlement_id": entitlement_id, "subject_id": revoked.subject_id, "resource_id": revoked.resource_id},
    )
    return revoked


def list_expired_time_bound(now: datetime) -> List[Entitlement]:
    """Active rows whose time-bound access has lapsed. Status is left as-is."""
    with get_db_session() as session:
        rows = session.execute(
            select(entitlements)
            .where(entitlements.c.status == "active")
            .where(entitlements.c.expires_at.is_not(None))
            .where(entitlements.c.expires_at <= now)
        ).fetchall()
        return [_row_to_entitlement(r) for r in rows]


def sweep_stale_pending(now: datetime, retention: timedelta) -> int:
    """Delete pending rows older than retention that never received a transaction."""
    cutoff = now - retention
    with get_db_session() as session:
        result = session.execute(
            delete(entitlements)
            .where(entitlements.c.status == "pending")
            .where(entitlements.c.transaction_hash.is_(None))
            .where(entitlements.c.created_at < cutoff)
        )
        return result.rowcount or 0


def list_payments(entitlement_id: int) -> List[Payment]:
    with get_db_session() as session:
        rows = session.execute(
            select(payments).where(payments.c.entitlement_id == entitlement_id).order_by(payments.c.id)
        ).fetchall()
        return [_row_to_payment(r) for r in rows]


def count_pending() -> int:
    with get_db_session() as session:
        rows = session.execute(select(entitlements.c.id).where(entitlements.c.status == "pending")).fetchall()
        return len(rows)
