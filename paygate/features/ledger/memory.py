"""
In-memory ledger hosting the escrow and factory contracts.

Used for local development (LEDGER_BACKEND=memory) and in tests. Messages are
delivered synchronously; every delivery records a transaction on the receiving
account with a monotonically increasing logical time.
"""
from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from paygate.core.errors import LedgerRequestError, ValidationError
from paygate.features.contracts.base import (
    Contract,
    ExecutionResult,
    InboundMessage,
    OutboundMessage,
    SEND_IGNORE_ERRORS,
    StateInit,
)
from paygate.features.contracts.escrow import ESCROW_CODE, EscrowContract
from paygate.features.contracts.factory import FactoryContract
from paygate.features.ledger.address import Address
from paygate.features.ledger.cells import Cell
from paygate.features.ledger.client import AccountState, LedgerTransaction
from paygate.features.ledger import wire


logger = logging.getLogger("paygate.ledger.memory")


@dataclass
class _Account:
    address: Address
    balance: int = 0
    contract: Optional[Contract] = None
    transactions: List[LedgerTransaction] = field(default_factory=list)


def _seed_address(label: str) -> Address:
    return Address(0, hashlib.sha256(label.encode("utf-8")).digest())


class InMemoryLedger:
    """Deterministic single-process ledger. Thread-safe."""

    def __init__(self, now: Optional[int] = None, escrow_options: Optional[Dict[str, Any]] = None):
        self.now = int(now if now is not None else time.time())
        self.escrow_options = dict(escrow_options or {})
        self.factory_address: Optional[str] = None
        self.last_results: List[ExecutionResult] = []
        self._accounts: Dict[Address, _Account] = {}
        self._lt = 0
        self._lock = threading.RLock()

    @classmethod
    def with_factory(cls, owner: Optional[Address] = None, **kwargs) -> "InMemoryLedger":
        ledger = cls(**kwargs)
        owner = owner or ledger.create_wallet("factory-owner", balance=wire.to_nano(1000))
        ledger.deploy_factory(owner)
        return ledger

    def advance(self, seconds: int) -> int:
        with self._lock:
            self.now += int(seconds)
            return self.now

    def _account(self, address: Address) -> _Account:
        account = self._accounts.get(address)
        if account is None:
            account = _Account(address=address)
            self._accounts[address] = account
        return account

    def create_wallet(self, label: str, balance: int = 0) -> Address:
        with self._lock:
            address = _seed_address(f"wallet:{label}")
            self._account(address).balance += balance
            return address

    def deploy_factory(self, owner: Address, **kwargs) -> FactoryContract:
        with self._lock:
            address = _seed_address(f"factory:{owner.to_raw()}")
            factory = FactoryContract(address, owner, **kwargs)
            self._account(address).contract = factory
            self.factory_address = address.to_raw()
            return factory

    def contract(self, address: str) -> Optional[Contract]:
        account = self._accounts.get(Address.parse(address))
        return account.contract if account else None

    @property
    def factory(self) -> Optional[FactoryContract]:
        return self.contract(self.factory_address) if self.factory_address else None

    def balance(self, address: str) -> int:
        account = self._accounts.get(Address.parse(address))
        return account.balance if account else 0

    def send(
        self,
        source: Address,
        destination: Any,
        value: int,
        body: Optional[Cell] = None,
        *,
        bounce: bool = True,
    ) -> LedgerTransaction:
        """Send an internal message from a wallet and process the resulting chain.

        Returns the transaction recorded on the destination account.
        """
        with self._lock:
            destination = Address.parse(destination)
            sender = self._account(source)
            if sender.balance < value:
                raise ValidationError(f"Insufficient balance on {source.to_raw()}")
            sender.balance -= value
            self.last_results = []
            queue: Deque[Tuple[Address, OutboundMessage]] = deque()
            first = self._deliver(source, OutboundMessage(destination, value, body, bounce=bounce), queue)
            while queue:
                origin, message = queue.popleft()
                self._deliver(origin, message, queue)
            return first

    def send_comment(self, source: Address, destination: Any, value: int, text: str) -> LedgerTransaction:
        return self.send(source, destination, value, wire.text_comment(text))

    def _next_lt(self) -> int:
        self._lt += 1000
        return self._lt

    def _record(self, account: _Account, source: Optional[Address], value: int, body: Optional[Cell], bounced: bool) -> LedgerTransaction:
        lt = self._next_lt()
        digest = hashlib.sha256()
        digest.update(account.address.to_raw().encode())
        digest.update(str(lt).encode())
        digest.update((source.to_raw() if source else "").encode())
        digest.update(str(value).encode())
        if body is not None:
            digest.update(body.hash())
        tx = LedgerTransaction(
            hash=digest.hexdigest(),
            lt=lt,
            utime=self.now,
            destination=account.address.to_raw(),
            value=value,
            source=source.to_raw() if source else None,
            bounced=bounced,
            comment=wire.read_text_comment(body),
        )
        account.transactions.append(tx)
        return tx

    def _deliver(
        self,
        origin: Address,
        message: OutboundMessage,
        queue: Deque[Tuple[Address, OutboundMessage]],
        bounced: bool = False,
    ) -> LedgerTransaction:
        account = self._account(message.destination)
        if account.contract is None and message.state_init is not None:
            account.contract = self._instantiate(message.destination, message.state_init)

        account.balance += message.value
        tx = self._record(account, origin, message.value, message.body, bounced)
        if account.contract is None or bounced:
            return tx

        result = account.contract.execute(InboundMessage(
            sender=origin,
            value=message.value,
            body=message.body,
            now=self.now,
            bounced=bounced,
        ))
        self.last_results.append(result)
        if not result.accepted:
            aborted = replace(tx, aborted=True)
            account.transactions[-1] = aborted
            tx = aborted
            logger.debug(f"{account.address.to_raw()} exited with {result.exit_code}: {result.error}")
            if message.bounce:
                account.balance -= message.value
                self._deliver(account.address, OutboundMessage(origin, message.value, message.body, bounce=False), queue, bounced=True)
            return tx

        for out in result.outbound:
            if account.balance < out.value:
                if out.mode & SEND_IGNORE_ERRORS:
                    logger.debug(f"Skipping outbound {out.value} from {account.address.to_raw()}: insufficient balance")
                    continue
                raise LedgerRequestError(f"Action phase failed on {account.address.to_raw()}")
            account.balance -= out.value
            queue.append((account.address, out))
        return tx

    def _instantiate(self, address: Address, state_init: StateInit) -> Optional[Contract]:
        if state_init.address(address.workchain) != address:
            logger.warning(f"StateInit does not match destination {address.to_raw()}")
            return None
        if state_init.code == ESCROW_CODE:
            return EscrowContract.from_state_init(address, state_init, **self.escrow_options)
        return None

    # LedgerClient interface

    def get_account_state(self, address: str) -> AccountState:
        with self._lock:
            account = self._accounts.get(Address.parse(address))
            if account is None:
                return AccountState(state="nonexist")
            if account.contract is None:
                return AccountState(state="uninitialized", balance=account.balance)
            return AccountState(state="active", balance=account.balance)

    def get_transactions(self, address: str, limit: int = 100) -> List[LedgerTransaction]:
        with self._lock:
            account = self._accounts.get(Address.parse(address))
            if account is None:
                return []
            return list(reversed(account.transactions))[:limit]

    def run_get_method(self, address: str, method: str, stack: Sequence[Any] = ()) -> List[Any]:
        with self._lock:
            contract = self.contract(address)
            if contract is None:
                raise LedgerRequestError(f"No contract at {address}")
            return contract.get_method(method, list(stack), self.now)
