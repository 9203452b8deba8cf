"""
Access grant coordinator.

Bridges entitlement activation to the access gate. A join request and the
payment that pays for it can arrive in either order:

- request first: the request is cached as pending and approved when the
  reconciler reports the activation;
- payment first: the activation finds no request, and the later join request
  sees the active entitlement and is approved immediately.

An expired time-bound subject is prompted again and the intent becomes a
renewal request. Revoked subjects are denied outright.

The pending-request cache is never authoritative; entitlements are.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import select, update, delete

from paygate.core.config import settings
from paygate.core.database import get_db_session, dialect_insert, pending_access_requests, entitlements, utc_now, ensure_utc
from paygate.core.errors import ConflictError, SideEffectDeliveryError
from paygate.core.logging import log_event
from paygate.features.deployments.service import get_deployment
from paygate.features.entitlements import service as entitlement_store
from paygate.features.ledger.address import Address
from paygate.features.ledger import wire
from paygate.features.resources.service import get_resource
from paygate.models.access import PendingAccessRequest
from paygate.models.resource import Resource


logger = logging.getLogger("paygate.access")


class Gate(Protocol):
    def approve_request(self, resource_id: int, subject_id: int) -> bool:
        ...

    def send_message(self, chat_id: int, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> None:
        ...


class AccessOutcome(str, Enum):
    IGNORED = "IGNORED"
    APPROVED = "APPROVED"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    DENIED = "DENIED"  # revoked; no payment can restore access


def _row_to_request(row) -> PendingAccessRequest:
    return PendingAccessRequest(
        id=row.id,
        subject_id=row.subject_id,
        resource_id=row.resource_id,
        requested_at=ensure_utc(row.requested_at),
        expires_at=ensure_utc(row.expires_at),
        payment_prompt_sent=bool(row.payment_prompt_sent),
    )


def get_pending_request(subject_id: int, resource_id: int) -> Optional[PendingAccessRequest]:
    with get_db_session() as session:
        row = session.execute(
            select(pending_access_requests)
            .where(pending_access_requests.c.subject_id == subject_id)
            .where(pending_access_requests.c.resource_id == resource_id)
        ).first()
        return _row_to_request(row) if row else None


def payment_instructions(resource: Resource, contract_address: str, marker: str) -> str:
    address = Address.parse(contract_address).to_string(
        bounceable=True, test_only=settings.LEDGER_NETWORK == "testnet"
    )
    access = "lifetime access" if resource.is_lifetime else f"{resource.access_period_seconds // 86400} days of access"
    return (
        f"{resource.title}\n\n"
        f"Price: {wire.from_nano(resource.price)} TON ({access})\n\n"
        f"Send the payment to:\n{address}\n"
        f"with the comment \"{marker}\".\n\n"
        f"Open in wallet: {wire.transfer_link(address, resource.price, marker)}\n\n"
        f"Your join request will be approved automatically once the payment is confirmed."
    )


class AccessGrantCoordinator:
    def __init__(
        self,
        gate: Gate,
        *,
        request_ttl: Optional[timedelta] = None,
        marker: Optional[str] = None,
        clock=utc_now,
    ):
        self.gate = gate
        self.request_ttl = request_ttl or timedelta(hours=settings.ACCESS_REQUEST_TTL_HOURS)
        self.marker = marker or settings.PAYMENT_MARKER
        self.clock = clock

    def on_access_request(self, subject_id: int, resource_id: int, now: Optional[datetime] = None) -> AccessOutcome:
        now = now or self.clock()
        resource = get_resource(resource_id)
        if resource is None or not resource.is_active:
            logger.info("Join request for unmanaged resource", extra={"subject_id": subject_id, "resource_id": resource_id})
            return AccessOutcome.IGNORED

        if entitlement_store.has_active_entitlement(subject_id, resource_id, now):
            self.gate.approve_request(resource_id, subject_id)
            try:
                self.gate.send_message(subject_id, f"Welcome back to {resource.title}! Your access is active.")
            except Exception as exc:
                logger.warning(f"Welcome message failed: {exc}", extra={"subject_id": subject_id, "resource_id": resource_id})
            log_event(
                "info",
                "access.approved",
                subject_id=subject_id,
                resource_id=resource_id,
                event_type="access.approved",
                logger_name="paygate.access",
            )
            return AccessOutcome.APPROVED

        existing = entitlement_store.find_entitlement(subject_id, resource_id)
        if existing is not None and existing.status == "revoked":
            try:
                self.gate.send_message(subject_id, f"Your access to {resource.title} has been revoked.")
            except Exception as exc:
                logger.warning(f"Revocation notice failed: {exc}", extra={"subject_id": subject_id, "resource_id": resource_id})
            log_event(
                "info",
                "access.denied",
                subject_id=subject_id,
                resource_id=resource_id,
                event_type="access.denied",
                logger_name="paygate.access",
            )
            return AccessOutcome.DENIED

        self._upsert_pending(subject_id, resource_id, now)
        if self._send_instructions(subject_id, resource, now):
            self._mark_prompt_sent(subject_id, resource_id)
        return AccessOutcome.PAYMENT_REQUIRED

    def _upsert_pending(self, subject_id: int, resource_id: int, now: datetime) -> None:
        expires_at = now + self.request_ttl
        with get_db_session() as session:
            stmt = dialect_insert(session, pending_access_requests).values(
                subject_id=subject_id,
                resource_id=resource_id,
                requested_at=now,
                expires_at=expires_at,
                payment_prompt_sent=False,
            )
            session.execute(stmt.on_conflict_do_update(
                index_elements=["subject_id", "resource_id"],
                set_={"expires_at": expires_at},
            ))

    def _mark_prompt_sent(self, subject_id: int, resource_id: int) -> None:
        with get_db_session() as session:
            session.execute(
                update(pending_access_requests)
                .where(pending_access_requests.c.subject_id == subject_id)
                .where(pending_access_requests.c.resource_id == resource_id)
                .values(payment_prompt_sent=True)
            )

    def _send_instructions(self, subject_id: int, resource: Resource, now: datetime) -> bool:
        deployment = get_deployment(resource.resource_id)
        if deployment is None:
            logger.warning(
                "No escrow recorded for resource; payment instructions not sent",
                extra={"subject_id": subject_id, "resource_id": resource.resource_id},
            )
            return False

        try:
            entitlement_store.express_intent(
                subject_id,
                resource.resource_id,
                price_expected=resource.price,
                tolerance_bps=resource.tolerance_bps,
                contract_address=deployment.contract_address,
                now=now,
            )
        except ConflictError as exc:
            logger.info(
                f"Payment intent not recorded: {exc.message}",
                extra={"subject_id": subject_id, "resource_id": resource.resource_id},
            )
            return False

        try:
            self.gate.send_message(subject_id, payment_instructions(resource, deployment.contract_address, self.marker))
        except Exception as exc:
            log_event(
                "warning",
                f"Payment instructions not delivered: {exc}",
                subject_id=subject_id,
                resource_id=resource.resource_id,
                error_code="side_effect_failed",
                logger_name="paygate.access",
            )
            return False
        return True

    def on_entitlement_activated(self, subject_id: int, resource_id: int, now: Optional[datetime] = None) -> bool:
        """Approve a waiting join request, if any.

        Raises:
            SideEffectDeliveryError: approval failed; the pending request is kept
                so maintenance can re-drive it.
        """
        now = now or self.clock()
        pending = get_pending_request(subject_id, resource_id)
        if pending is None or pending.expires_at <= now:
            return False

        try:
            self.gate.approve_request(resource_id, subject_id)
        except SideEffectDeliveryError:
            raise
        except Exception as exc:
            raise SideEffectDeliveryError(f"Approval failed for subject {subject_id} on resource {resource_id}: {exc}") from exc

        self._delete_request(subject_id, resource_id)
        log_event(
            "info",
            "access.approved_after_payment",
            subject_id=subject_id,
            resource_id=resource_id,
            event_type="access.approved",
            logger_name="paygate.access",
        )
        return True

    def _delete_request(self, subject_id: int, resource_id: int) -> None:
        with get_db_session() as session:
            session.execute(
                delete(pending_access_requests)
                .where(pending_access_requests.c.subject_id == subject_id)
                .where(pending_access_requests.c.resource_id == resource_id)
            )

    def redrive_pending(self, now: Optional[datetime] = None) -> int:
        """Approve unexpired requests whose entitlement is already active."""
        now = now or self.clock()
        with get_db_session() as session:
            rows = session.execute(
                select(pending_access_requests.c.subject_id, pending_access_requests.c.resource_id)
                .join(
                    entitlements,
                    (entitlements.c.subject_id == pending_access_requests.c.subject_id)
                    & (entitlements.c.resource_id == pending_access_requests.c.resource_id),
                )
                .where(entitlements.c.status == "active")
                .where(pending_access_requests.c.expires_at > now)
            ).fetchall()

        approved = 0
        for row in rows:
            if not entitlement_store.has_active_entitlement(row.subject_id, row.resource_id, now):
                continue
            try:
                if self.on_entitlement_activated(row.subject_id, row.resource_id, now):
                    approved += 1
            except SideEffectDeliveryError as exc:
                logger.warning(
                    f"Re-drive approval failed: {exc.message}",
                    extra={"subject_id": row.subject_id, "resource_id": row.resource_id},
                )
        if approved:
            logger.info(f"Re-drove {approved} pending join requests")
        return approved

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        with get_db_session() as session:
            result = session.execute(
                delete(pending_access_requests).where(pending_access_requests.c.expires_at <= now)
            )
            removed = result.rowcount or 0
        if removed:
            logger.info(f"Cleaned up {removed} expired join requests")
        return removed

    def dispatch_gate_update(self, update_payload: Dict[str, Any], now: Optional[datetime] = None) -> Optional[AccessOutcome]:
        """Route a raw gate update. Only chat join requests are handled."""
        join_request = update_payload.get("chat_join_request")
        if not join_request:
            return None
        try:
            subject_id = int(join_request["from"]["id"])
            resource_id = int(join_request["chat"]["id"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed chat_join_request update ignored")
            return None
        return self.on_access_request(subject_id, resource_id, now)
