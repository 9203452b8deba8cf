"""
Factory contract: deploys at most one escrow per resource key.

Escrow addresses are derived from (factory, resource_id, code), so concurrent
deploy requests for the same resource converge on one address. The second one
observes the existing map entry and fails with "already deployed".
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

from paygate.core.errors import DuplicateDeploymentError
from paygate.features.contracts.base import (
    Contract,
    ContractExit,
    ExitCode,
    InboundMessage,
    OutboundMessage,
    PersistentMap,
    require_address,
)
from paygate.features.contracts.escrow import ESCROW_CODE, escrow_state_init
from paygate.features.ledger.address import Address
from paygate.features.ledger.cells import Cell
from paygate.features.ledger import wire


DEPLOY_FEE = wire.to_nano("0.1")
DEPLOY_VALUE = wire.to_nano("0.7")
REGISTRATION_TTL_SECONDS = 3600


@dataclass(frozen=True)
class Registration:
    resource_id: int
    price: int
    registered_at: int


class FactoryContract(Contract):
    def __init__(
        self,
        address: Address,
        owner: Address,
        *,
        escrow_code: Cell = ESCROW_CODE,
        deploy_fee: int = DEPLOY_FEE,
        registration_ttl: int = REGISTRATION_TTL_SECONDS,
        default_tolerance_bps: int = 100,
    ):
        super().__init__(address)
        self.owner = owner
        self.escrow_code = escrow_code
        self.deploy_fee = deploy_fee
        self.registration_ttl = registration_ttl
        self.default_tolerance_bps = default_tolerance_bps
        self.deployments: PersistentMap[int, Address] = PersistentMap()
        self.registrations: PersistentMap[Address, Registration] = PersistentMap()

    def address_for(self, resource_id: int) -> Address:
        return escrow_state_init(self.address, resource_id, self.escrow_code).address(self.address.workchain)

    def deploy(
        self,
        resource_id: int,
        beneficiary: Address,
        price: int,
        value: int,
        *,
        tolerance_bps: Optional[int] = None,
        access_period_seconds: int = 0,
    ) -> Address:
        """Record and emit the escrow deployment for `resource_id`.

        Raises DuplicateDeploymentError carrying the existing address when the
        resource already has an escrow.
        """
        existing = self.deployments.get(resource_id)
        if existing is not None:
            raise DuplicateDeploymentError(resource_id, existing.to_raw())

        state_init = escrow_state_init(self.address, resource_id, self.escrow_code)
        address = state_init.address(self.address.workchain)
        self.deployments.set(resource_id, address)

        init = wire.EscrowInit(
            beneficiary=beneficiary,
            price=price,
            tolerance_bps=self.default_tolerance_bps if tolerance_bps is None else tolerance_bps,
            access_period_seconds=access_period_seconds,
        )
        self.send(OutboundMessage(
            destination=address,
            value=max(value - self.deploy_fee, 0),
            body=init.to_cell(),
            bounce=False,
            state_init=state_init,
        ))
        return address

    def receive(self, msg: InboundMessage) -> None:
        if msg.bounced:
            return

        opcode = wire.read_opcode(msg.body)
        if opcode == wire.OP_REGISTER_DEPLOYMENT:
            if msg.sender != self.owner:
                raise ContractExit(ExitCode.ACCESS_DENIED)
            cs = msg.body.begin_parse()
            cs.load_uint(32)
            reg = wire.RegisterDeployment.from_slice(cs)
            self.registrations.set(reg.user_wallet, Registration(reg.resource_id, reg.price, msg.now))
        elif opcode == wire.OP_TEXT_COMMENT and wire.read_text_comment(msg.body) == wire.DEPLOY_MARKER:
            self._deploy_registered(msg)
        else:
            raise ContractExit(ExitCode.UNKNOWN_MESSAGE)

    def _deploy_registered(self, msg: InboundMessage) -> None:
        reg = self.registrations.get(msg.sender)
        if reg is None:
            raise ContractExit(ExitCode.NOT_REGISTERED, "deployment not registered")
        if msg.now - reg.registered_at > self.registration_ttl:
            raise ContractExit(ExitCode.REGISTRATION_EXPIRED, "registration expired")
        try:
            self.deploy(reg.resource_id, msg.sender, reg.price, msg.value)
        except DuplicateDeploymentError as exc:
            raise ContractExit(ExitCode.ALREADY_DEPLOYED, exc.message) from exc
        self.registrations.delete(msg.sender)

    def get_method(self, name: str, args: Sequence[Any], now: int) -> List[Any]:
        if name == "getSubscriptionAddress":
            return [self.address_for(int(args[0]))]
        if name == "isDeployed":
            return [-1 if int(args[0]) in self.deployments else 0]
        if name == "getRegisteredDeployment":
            reg = self.registrations.get(require_address(args[0]))
            if reg is None:
                return [None]
            return [reg.resource_id, reg.price, reg.registered_at]
        if name == "owner":
            return [self.owner]
        return super().get_method(name, args, now)
