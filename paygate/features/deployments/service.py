"""
paygate/features/deployments/service.py

Off-chain mirror of the factory's resource -> escrow map.

The escrow address is deterministic, so the registry can be filled from the
ledger at any time. Rows are write-once: a second write for the same resource
raises DuplicateDeploymentError carrying the recorded address, and callers
treat that as success.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import logging

from sqlalchemy import select

from paygate.core.database import get_db_session, dialect_insert, deployed_contracts, utc_now, ensure_utc
from paygate.core.errors import DuplicateDeploymentError, ReconciliationIOError, ValidationError
from paygate.features.contracts.factory import DEPLOY_VALUE
from paygate.features.ledger.address import Address, normalize_address
from paygate.features.ledger.client import LedgerClient, stack_address
from paygate.features.ledger import wire
from paygate.models.resource import DeployedContract, Resource


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeploymentStatus:
    resource_id: int
    contract_address: str
    deployed: bool
    recorded: bool
    # Owner-side payload and user-side link for deployments still pending
    registration_payload: Optional[str] = None
    deploy_link: Optional[str] = None


def _row_to_deployment(row) -> DeployedContract:
    return DeployedContract(
        resource_id=row.resource_id,
        contract_address=row.contract_address,
        deployed_at=ensure_utc(row.deployed_at),
    )


def get_deployment(resource_id: int) -> Optional[DeployedContract]:
    with get_db_session() as session:
        row = session.execute(
            select(deployed_contracts).where(deployed_contracts.c.resource_id == resource_id)
        ).first()
        return _row_to_deployment(row) if row else None


def record_deployment(resource_id: int, contract_address: str, now: Optional[datetime] = None) -> DeployedContract:
    """Write-once insert.

    Raises:
        DuplicateDeploymentError: the resource already has a recorded contract
    """
    address = normalize_address(contract_address)
    ts = now or utc_now()
    with get_db_session() as session:
        result = session.execute(
            dialect_insert(session, deployed_contracts)
            .values(resource_id=resource_id, contract_address=address, deployed_at=ts)
            .on_conflict_do_nothing()
        )
        inserted = bool(result.rowcount)
        row = session.execute(
            select(deployed_contracts).where(deployed_contracts.c.resource_id == resource_id)
        ).first()

    if not inserted:
        existing = row.contract_address if row else address
        raise DuplicateDeploymentError(resource_id, existing)

    logger.info("[deployments] recorded", extra={"resource_id": resource_id, "contract_address": address})
    return _row_to_deployment(row)


def ensure_recorded(resource_id: int, contract_address: str, now: Optional[datetime] = None) -> DeployedContract:
    """record_deployment that treats an existing row as success."""
    try:
        return record_deployment(resource_id, contract_address, now=now)
    except DuplicateDeploymentError as exc:
        logger.info(
            "[deployments] already recorded",
            extra={"resource_id": resource_id, "contract_address": exc.address},
        )
        return get_deployment(resource_id)


def registration_payload(resource: Resource, wallet: str) -> str:
    """Base64 BOC the factory owner sends to pre-register a deployment."""
    msg = wire.RegisterDeployment(
        user_wallet=Address.parse(wallet),
        resource_id=resource.resource_id,
        price=resource.price,
    )
    return wire.encode_boc(msg.to_cell())


class DeploymentRegistry:
    """Reads escrow addresses from the factory and mirrors them locally."""

    def __init__(self, ledger: LedgerClient, factory_address: Optional[str]):
        self.ledger = ledger
        self.factory_address = normalize_address(factory_address) if factory_address else None

    def _require_factory(self) -> str:
        if not self.factory_address:
            raise ValidationError("FACTORY_CONTRACT_ADDRESS is not configured")
        return self.factory_address

    def address_for(self, resource_id: int) -> str:
        factory = self._require_factory()
        stack = self.ledger.run_get_method(factory, "getSubscriptionAddress", [resource_id])
        address = stack_address(stack[0]) if stack else None
        if address is None:
            raise ReconciliationIOError(f"Factory returned no address for resource {resource_id}")
        return address.to_raw()

    def contract_address(self, resource_id: int) -> Optional[str]:
        """Recorded address, or None when the escrow is not known to be live."""
        recorded = get_deployment(resource_id)
        return recorded.contract_address if recorded else None

    def sync(self, resource: Resource, now: Optional[datetime] = None) -> DeploymentStatus:
        """Record the escrow once it is live on the ledger."""
        recorded = get_deployment(resource.resource_id)
        address = recorded.contract_address if recorded else self.address_for(resource.resource_id)
        state = self.ledger.get_account_state(address)

        if state.is_active:
            if not recorded:
                recorded = ensure_recorded(resource.resource_id, address, now=now)
            return DeploymentStatus(
                resource_id=resource.resource_id,
                contract_address=recorded.contract_address,
                deployed=True,
                recorded=True,
            )

        payload = None
        link = None
        if resource.beneficiary_address:
            payload = registration_payload(resource, resource.beneficiary_address)
            link = wire.transfer_link(self._require_factory(), DEPLOY_VALUE, wire.DEPLOY_MARKER)
        logger.info(
            "[deployments] escrow not live yet",
            extra={"resource_id": resource.resource_id, "contract_address": address, "status": state.state},
        )
        return DeploymentStatus(
            resource_id=resource.resource_id,
            contract_address=address,
            deployed=False,
            recorded=recorded is not None,
            registration_payload=payload,
            deploy_link=link,
        )
