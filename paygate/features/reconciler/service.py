"""
Payment reconciler.

Polls the ledger for payments into escrow contracts and activates matching
pending entitlements exactly once. Cycles are single-flight: a tick that fires
while a cycle is still running is skipped. Side effects (subject notification
and gate approval) run after the activation commit and never undo it.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set
from uuid import uuid4

from sqlalchemy import insert

from paygate.core.config import settings
from paygate.core.database import get_db_session, reconciler_runs, utc_now
from paygate.core.errors import ActivationConflictError, SideEffectDeliveryError, ValidationError
from paygate.core.logging import log_event, request_id_ctx_var
from paygate.core.metrics import (
    entitlements_activated_total,
    entitlements_expired_time_bound,
    entitlements_renewed_total,
    reconciler_cycles_total,
    reconciler_last_success_timestamp,
    reconciler_pending_entitlements,
    reconciler_stalled,
    reconciler_ticks_skipped_total,
    side_effect_failures_total,
)
from paygate.features.contracts.escrow import meets_tolerance
from paygate.features.entitlements import service as entitlement_store
from paygate.features.entitlements.service import CreditedTransaction
from paygate.features.ledger.address import same_address
from paygate.features.ledger.client import LedgerClient, LedgerTransaction
from paygate.features.resources.service import get_resource
from paygate.models.entitlement import Entitlement


logger = logging.getLogger("paygate.reconciler")

JOB_NAME = "payments.reconcile"
MIN_INTERVAL_SECONDS = 10
MAX_INTERVAL_SECONDS = 300


class Notifier(Protocol):
    def send_message(self, chat_id: int, text: str) -> None:
        ...


class ActivationListener(Protocol):
    def on_entitlement_activated(self, subject_id: int, resource_id: int, now: Optional[datetime] = None) -> bool:
        ...


@dataclass
class CycleContext:
    """State carried through one reconciliation cycle."""

    cycle_id: str
    now: datetime
    batch_size: int = 0
    checked: int = 0
    skipped: int = 0
    activated: int = 0
    conflicts: int = 0
    ledger_lookups: int = 0
    ledger_errors: int = 0
    side_effect_failures: int = 0
    store_failed: bool = False
    errors: List[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None

    @property
    def status(self) -> str:
        if self.store_failed:
            return "failed"
        if self.ledger_lookups and self.ledger_errors == self.ledger_lookups:
            return "failed"
        if self.errors:
            return "degraded"
        return "success"

    def stats(self) -> Dict[str, object]:
        return {
            "batch_size": self.batch_size,
            "checked": self.checked,
            "skipped": self.skipped,
            "activated": self.activated,
            "conflicts": self.conflicts,
            "ledger_lookups": self.ledger_lookups,
            "ledger_errors": self.ledger_errors,
            "side_effect_failures": self.side_effect_failures,
            "errors": self.errors[:20],
        }


def match_transaction(
    ent: Entitlement,
    txs: Iterable[LedgerTransaction],
    credited: Set[str],
    marker: str,
) -> Optional[LedgerTransaction]:
    """Earliest confirmed transaction that pays for `ent`, or None."""
    since = ent.payment_window_start.timestamp()
    candidates = [
        tx for tx in txs
        if tx.is_inbound
        and not tx.bounced
        and not tx.aborted
        and tx.comment == marker
        and tx.utime > since
        and meets_tolerance(tx.value, ent.price_expected, ent.tolerance_bps)
        and tx.hash not in credited
        and (ent.subject_address is None or same_address(tx.source, ent.subject_address))
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda tx: (tx.utime, tx.lt))
    return candidates[0]


class PaymentReconciler:
    def __init__(
        self,
        ledger: LedgerClient,
        *,
        coordinator: Optional[ActivationListener] = None,
        notifier: Optional[Notifier] = None,
        interval_seconds: Optional[int] = None,
        lookback: Optional[timedelta] = None,
        batch_limit: Optional[int] = None,
        tx_scan_limit: Optional[int] = None,
        marker: Optional[str] = None,
        alert_after_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        interval = settings.PAYMENT_CHECK_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        if not MIN_INTERVAL_SECONDS <= interval <= MAX_INTERVAL_SECONDS:
            raise ValidationError(
                f"Payment check interval {interval}s must be between {MIN_INTERVAL_SECONDS} and {MAX_INTERVAL_SECONDS} seconds"
            )
        self.ledger = ledger
        self.coordinator = coordinator
        self.notifier = notifier
        self.interval_seconds = interval
        self.lookback = lookback or timedelta(hours=settings.PAYMENT_LOOKBACK_HOURS)
        self.batch_limit = batch_limit or settings.PAYMENT_BATCH_LIMIT
        self.tx_scan_limit = tx_scan_limit or settings.PAYMENT_TX_SCAN_LIMIT
        self.marker = marker or settings.PAYMENT_MARKER
        self.alert_after = timedelta(seconds=alert_after_seconds or settings.RECONCILER_ALERT_AFTER_SECONDS)
        self.clock = clock

        self._lock = threading.Lock()
        self.last_success_at: datetime = clock()
        self.last_cycle: Optional[CycleContext] = None
        self.stalled = False

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def run_cycle(self) -> Optional[CycleContext]:
        """Run one cycle, or return None if a cycle is already in flight."""
        if not self._lock.acquire(blocking=False):
            reconciler_ticks_skipped_total.inc()
            logger.warning("Previous reconciliation cycle still in progress, skipping tick")
            # A hung cycle holds the lock; the alert must still fire
            self.check_stalled(self.clock())
            return None
        try:
            ctx = CycleContext(cycle_id=f"cycle-{uuid4().hex[:12]}", now=self.clock())
            token = request_id_ctx_var.set(ctx.cycle_id)
            try:
                self._run(ctx)
            finally:
                request_id_ctx_var.reset(token)
            return ctx
        finally:
            self._lock.release()

    def _run(self, ctx: CycleContext) -> None:
        try:
            pending = entitlement_store.list_pending(ctx.now, self.lookback, self.batch_limit)
            pending += entitlement_store.list_renewals(ctx.now, self.lookback, self.batch_limit)
        except Exception as exc:
            ctx.store_failed = True
            ctx.errors.append(f"store: {exc}")
            logger.error(f"Failed to list pending entitlements: {exc}", exc_info=True)
            pending = []

        ctx.batch_size = len(pending)
        reconciler_pending_entitlements.set(len(pending))
        for ent in pending:
            self._process(ctx, ent)

        ctx.finished_at = self.clock()
        self._finish(ctx)

    def _process(self, ctx: CycleContext, ent: Entitlement) -> None:
        ctx.checked += 1
        if not ent.contract_address:
            ctx.skipped += 1
            return

        ctx.ledger_lookups += 1
        try:
            state = self.ledger.get_account_state(ent.contract_address)
            if not state.is_active:
                ctx.skipped += 1
                logger.info(
                    f"Contract not active yet ({state.state}), retrying next cycle",
                    extra={"entitlement_id": ent.id, "contract_address": ent.contract_address},
                )
                return
            txs = self.ledger.get_transactions(ent.contract_address, limit=self.tx_scan_limit)
            credited = entitlement_store.credited_hashes(tx.hash for tx in txs)
        except Exception as exc:
            ctx.ledger_errors += 1
            ctx.errors.append(f"entitlement {ent.id}: {exc}")
            logger.warning(
                f"Ledger lookup failed: {exc}",
                extra={"entitlement_id": ent.id, "contract_address": ent.contract_address},
            )
            return

        tx = match_transaction(ent, txs, credited, self.marker)
        if tx is None:
            return
        self._activate(ctx, ent, tx)

    def _activate(self, ctx: CycleContext, ent: Entitlement, tx: LedgerTransaction) -> None:
        resource = get_resource(ent.resource_id)
        period = resource.access_period_seconds if resource else None
        try:
            activated = entitlement_store.activate(
                ent.id,
                CreditedTransaction(
                    hash=tx.hash,
                    amount=tx.value,
                    confirmed_at=datetime.fromtimestamp(tx.utime, ctx.now.tzinfo),
                    from_address=tx.source,
                    to_address=tx.destination,
                ),
                access_period_seconds=period,
                now=ctx.now,
            )
        except ActivationConflictError as exc:
            ctx.conflicts += 1
            logger.info(f"Activation skipped: {exc.message}", extra={"entitlement_id": ent.id})
            return
        except Exception as exc:
            ctx.errors.append(f"activate {ent.id}: {exc}")
            logger.error(f"Activation failed: {exc}", exc_info=True, extra={"entitlement_id": ent.id})
            return

        ctx.activated += 1
        event = "entitlement.renewed" if ent.awaiting_renewal else "entitlement.activated"
        if ent.awaiting_renewal:
            entitlements_renewed_total.inc()
        else:
            entitlements_activated_total.inc()
        log_event(
            "info",
            event,
            subject_id=activated.subject_id,
            resource_id=activated.resource_id,
            entitlement_id=activated.id,
            event_type=event,
            extra={"transaction_hash": tx.hash, "amount": tx.value},
            logger_name="paygate.reconciler",
        )
        self._after_activation(ctx, activated, renewed=ent.awaiting_renewal)

    def _after_activation(self, ctx: CycleContext, ent: Entitlement, renewed: bool = False) -> None:
        if self.notifier is not None:
            try:
                self.notifier.send_message(ent.subject_id, _activation_message(ent, renewed))
            except Exception as exc:
                self._side_effect_failed(ctx, ent, "notify", exc)

        if self.coordinator is not None:
            try:
                self.coordinator.on_entitlement_activated(ent.subject_id, ent.resource_id, ctx.now)
            except Exception as exc:
                self._side_effect_failed(ctx, ent, "approve", exc)

    def _side_effect_failed(self, ctx: CycleContext, ent: Entitlement, kind: str, exc: Exception) -> None:
        ctx.side_effect_failures += 1
        side_effect_failures_total.inc(labels={"kind": kind})
        error = exc if isinstance(exc, SideEffectDeliveryError) else SideEffectDeliveryError(str(exc))
        log_event(
            "warning",
            f"Side effect '{kind}' failed: {error.message}",
            subject_id=ent.subject_id,
            resource_id=ent.resource_id,
            entitlement_id=ent.id,
            error_code=error.code,
            logger_name="paygate.reconciler",
        )

    def _finish(self, ctx: CycleContext) -> None:
        status = ctx.status
        reconciler_cycles_total.inc(labels={"status": status})
        if status != "failed":
            self.last_success_at = ctx.finished_at or ctx.now
            reconciler_last_success_timestamp.set(self.last_success_at.timestamp())
        self.last_cycle = ctx
        self.check_stalled(ctx.finished_at or ctx.now)
        self._record_run(ctx)

        log_fn = logger.info if status == "success" else logger.warning
        log_fn(
            f"Reconciliation cycle {status}: checked={ctx.checked} activated={ctx.activated} "
            f"skipped={ctx.skipped} errors={len(ctx.errors)}",
            extra={"cycle_id": ctx.cycle_id, "status": status},
        )

    def check_stalled(self, now: datetime) -> bool:
        """Raise the stall alert when no cycle has succeeded within the threshold."""
        stalled = now - self.last_success_at > self.alert_after
        if stalled:
            logger.critical(
                f"CRITICAL: payment reconciliation has not succeeded since {self.last_success_at.isoformat()}",
                extra={"event_type": "reconciler.stalled"},
            )
        self.stalled = stalled
        reconciler_stalled.set(1 if stalled else 0)
        return stalled

    def _record_run(self, ctx: CycleContext) -> None:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(reconciler_runs).values(
                        job_name=JOB_NAME,
                        started_at=ctx.now,
                        finished_at=ctx.finished_at,
                        status=ctx.status,
                        stats_json=json.dumps(ctx.stats()),
                    )
                )
        except Exception as exc:
            logger.warning(f"Failed to record reconciler run: {exc}")

    def expire_time_bound(self, now: Optional[datetime] = None) -> List[Entitlement]:
        """Report active entitlements past their expiry. Status is not changed."""
        expired = entitlement_store.list_expired_time_bound(now or self.clock())
        entitlements_expired_time_bound.set(len(expired))
        if expired:
            logger.info(f"{len(expired)} time-bound entitlements have expired")
        return expired

    def sweep_stale_pending(self, now: Optional[datetime] = None, retention: Optional[timedelta] = None) -> int:
        retention = retention or timedelta(days=settings.PENDING_RETENTION_DAYS)
        removed = entitlement_store.sweep_stale_pending(now or self.clock(), retention)
        if removed:
            logger.info(f"Removed {removed} stale pending entitlements")
        return removed

    def tick(self) -> Optional[CycleContext]:
        """One scheduled run: a cycle, then expiry reporting and the stale sweep."""
        ctx = self.run_cycle()
        if ctx is None:
            return None
        self.expire_time_bound(ctx.now)
        self.sweep_stale_pending(ctx.now)
        return ctx

    def status(self) -> Dict[str, object]:
        last = self.last_cycle
        return {
            "interval_seconds": self.interval_seconds,
            "running": self.running,
            "stalled": self.stalled,
            "last_success_at": self.last_success_at.isoformat(),
            "last_cycle": None if last is None else {
                "cycle_id": last.cycle_id,
                "status": last.status,
                "started_at": last.now.isoformat(),
                **last.stats(),
            },
        }


def _activation_message(ent: Entitlement, renewed: bool = False) -> str:
    text = "Payment confirmed. Your access has been extended." if renewed else "Payment confirmed. Your access is now active."
    if ent.expires_at:
        text += f" It is valid until {ent.expires_at.strftime('%Y-%m-%d %H:%M UTC')}."
    return text


class PeriodicRunner:
    """Fires `tick` every `interval` seconds on a worker thread until stopped.

    Each tick gets its own thread so an overrunning tick does not delay the
    schedule; overlap is resolved by the tick's own single-flight guard.
    """

    def __init__(self, tick: Callable[[], object], interval: float, name: str = "periodic"):
        self.tick = tick
        self.interval = interval
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            logger.exception(f"{self.name} tick failed")

    def _loop(self) -> None:
        while not self._stop.is_set():
            threading.Thread(target=self._safe_tick, name=f"{self.name}-tick", daemon=True).start()
            if self._stop.wait(self.interval):
                break

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"{self.name} started (interval={self.interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info(f"{self.name} stopped")

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_forever(self) -> None:
        """Block the calling thread until interrupted."""
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            self.stop()
