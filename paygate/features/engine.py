"""
Wiring for the long-lived components shared by the API and the workers.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from paygate.core.config import Settings, settings
from paygate.features.access.coordinator import AccessGrantCoordinator
from paygate.features.access.gate import TelegramGate
from paygate.features.access.health import GateHealthMonitor
from paygate.features.deployments.service import DeploymentRegistry
from paygate.features.ledger.client import LedgerClient, build_ledger
from paygate.features.reconciler.service import PaymentReconciler


logger = logging.getLogger("paygate")


@dataclass
class Engine:
    ledger: LedgerClient
    gate: TelegramGate
    coordinator: AccessGrantCoordinator
    reconciler: PaymentReconciler
    registry: DeploymentRegistry
    health: GateHealthMonitor

    def close(self) -> None:
        for client in (self.ledger, self.gate):
            close = getattr(client, "close", None)
            if close is not None:
                close()


def build_engine(
    cfg: Optional[Settings] = None,
    *,
    ledger: Optional[LedgerClient] = None,
    gate=None,
) -> Engine:
    cfg = cfg or settings
    ledger = ledger or build_ledger(cfg)
    gate = gate or TelegramGate.from_settings(cfg)
    factory_address = cfg.FACTORY_CONTRACT_ADDRESS or getattr(ledger, "factory_address", None)

    coordinator = AccessGrantCoordinator(gate)
    reconciler = PaymentReconciler(
        ledger,
        coordinator=coordinator,
        notifier=gate,
        interval_seconds=cfg.PAYMENT_CHECK_INTERVAL_SECONDS,
    )
    engine = Engine(
        ledger=ledger,
        gate=gate,
        coordinator=coordinator,
        reconciler=reconciler,
        registry=DeploymentRegistry(ledger, factory_address),
        health=GateHealthMonitor(gate),
    )
    logger.info(f"Engine ready (ledger={cfg.LEDGER_BACKEND}, network={cfg.LEDGER_NETWORK})")
    return engine
