"""
solarledger/core/host.py
========================
Solar P2P Ledger — Host ledger execution environment.

The trading contract never touches balances, clocks or the event log
directly; it runs on top of a ``HostLedger`` which provides:

1. **Atomic calls** — every state-changing call runs inside
   ``HostLedger.call()``.  The contract's ``state`` object, all account
   balances and the pending event buffer are snapshotted first; if the call
   raises, everything is restored and the exception propagates.
2. **Caller identity & value** — a frozen ``CallContext`` with the sender,
   the attached payment and the call timestamp.
3. **Value transfer** — integer balances keyed by address.  The attached
   value is escrowed into the contract's balance before the body runs.
4. **Event log** — append-only sequence of ``LogEntry`` records.  Events
   only reach the log (and subscribers) once the call commits.
5. **Monotonic timestamps** — call timestamps never go backwards, even if
   the wall clock does.

Usage::

    host = HostLedger()
    contract = host.deploy(EnergyTradingContract, owner="0xowner")
    host.fund("0xconsumer", 1_000)
    contract.register_or_update_listing(100, 10, sender="0xproducer")
    contract.purchase_energy("0xproducer", 30, sender="0xconsumer", value=300)
"""

from __future__ import annotations

import copy
import functools
import hashlib
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import structlog

from solarledger.core.errors import (
    InsufficientFunds,
    InvalidInput,
    InvalidState,
    LedgerError,
)
from solarledger.interfaces.metrics import REVERTS_TOTAL

__all__ = [
    "CallContext",
    "HostLedger",
    "LogEntry",
    "external",
    "require_amount",
]

log = structlog.get_logger(__name__)

Subscriber = Callable[["LogEntry"], None]


class ContractEvent(Protocol):
    NAME: str

    def to_dict(self) -> dict[str, Any]: ...


class DeployedContract(Protocol):
    address: str
    state: Any


C = TypeVar("C")


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallContext:
    """Execution context handed to a contract method.

    Attributes:
        sender:     Address of the caller.
        value:      Payment attached to the call (already escrowed).
        timestamp:  Monotonic call timestamp (Unix seconds).
        tx_index:   Sequential index of this host transaction.
    """
    sender: str
    value: int
    timestamp: int
    tx_index: int


@dataclass(frozen=True)
class LogEntry:
    """One committed event in the host's append-only log."""
    log_index: int
    tx_index: int
    timestamp: int
    contract: str
    event: ContractEvent

    @property
    def name(self) -> str:
        return self.event.NAME

    def to_dict(self) -> dict[str, Any]:
        return {
            "logIndex": self.log_index,
            "txIndex": self.tx_index,
            "timestamp": self.timestamp,
            "contract": self.contract,
            **self.event.to_dict(),
        }


# ---------------------------------------------------------------------------
# Validation helpers shared with the contract
# ---------------------------------------------------------------------------


def require_amount(value: object, what: str = "amount") -> int:
    """Return *value* if it is a non-negative ``int`` (``bool`` excluded)."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{what} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise InvalidInput(f"{what} must not be negative, got {value}")
    return value


def _require_address(address: object) -> str:
    if not isinstance(address, str) or not address.strip():
        raise InvalidInput(f"Invalid address: {address!r}")
    return address


def _derive_address(deployer: str, nonce: int) -> str:
    digest = hashlib.sha256(f"{deployer}:{nonce}".encode()).hexdigest()
    return "0x" + digest[:40]


def _checkpoint(contract: DeployedContract) -> Callable[[], None]:
    """Capture *contract*'s state and return a callable that restores it.

    States exposing ``checkpoint()``/``restore()`` are captured in time
    independent of their history; anything else is deep-copied.
    """
    state = contract.state
    if hasattr(state, "checkpoint") and hasattr(state, "restore"):
        saved = state.checkpoint()

        def restore_in_place() -> None:
            contract.state = state
            state.restore(saved)

        return restore_in_place

    saved_copy = copy.deepcopy(state)

    def restore() -> None:
        contract.state = saved_copy

    return restore


# ---------------------------------------------------------------------------
# Host ledger
# ---------------------------------------------------------------------------


class HostLedger:
    """In-process execution environment for ledger contracts.

    Parameters:
        clock:  Callable returning the current Unix time.  Defaults to
                ``time.time``; tests pass a fixed or stepping clock.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._lock = threading.RLock()
        self._balances: dict[str, int] = {}
        self._log: list[LogEntry] = []
        self._subscribers: list[Subscriber] = []
        self._contracts: dict[str, DeployedContract] = {}
        self._nonces: dict[str, int] = {}
        self._pending: list[tuple[str, ContractEvent]] | None = None
        self._tx_count: int = 0
        self._last_timestamp: int = 0

    # ------------------------------------------------------------------
    # Deployment
    # ------------------------------------------------------------------

    def deploy(self, contract_cls: Callable[..., C], owner: str, **kwargs: Any) -> C:
        """Instantiate *contract_cls* at a fresh address owned by *owner*."""
        _require_address(owner)
        with self._lock:
            nonce = self._nonces.get(owner, 0)
            self._nonces[owner] = nonce + 1
            address = _derive_address(owner, nonce)
            contract = contract_cls(host=self, address=address, owner=owner, **kwargs)
            self._contracts[address] = contract  # type: ignore[assignment]
            self._balances.setdefault(address, 0)
        log.info(
            "host.contract_deployed",
            contract=address,
            owner=owner,
            kind=getattr(contract_cls, "__name__", str(contract_cls)),
        )
        return contract

    def get_contract(self, address: str) -> DeployedContract | None:
        return self._contracts.get(address)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def balance_of(self, address: str) -> int:
        return self._balances.get(address, 0)

    def fund(self, address: str, amount: int) -> int:
        """Credit *amount* to *address* out of thin air (dev faucet).

        Returns the new balance.  Crediting a contract address this way is
        the only route to a residual contract balance.
        """
        _require_address(address)
        require_amount(amount, "amount")
        if amount == 0:
            raise InvalidInput("amount must be greater than 0")
        with self._lock:
            self._balances[address] = self._balances.get(address, 0) + amount
            balance = self._balances[address]
        log.info("host.account_funded", address=address, amount=amount, balance=balance)
        return balance

    def transfer(self, src: str, dst: str, amount: int) -> None:
        """Move *amount* from *src* to *dst* inside the current call."""
        if self._pending is None:
            raise LedgerError("transfer() is only allowed inside a contract call")
        _require_address(dst)
        require_amount(amount, "amount")
        self._move(src, dst, amount)

    def _move(self, src: str, dst: str, amount: int) -> None:
        if amount == 0:
            return
        available = self._balances.get(src, 0)
        if available < amount:
            raise InsufficientFunds(
                f"Insufficient funds: {src} has {available}, needs {amount}"
            )
        self._balances[src] = available - amount
        self._balances[dst] = self._balances.get(dst, 0) + amount

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def emit(self, contract: str, event: ContractEvent) -> None:
        """Buffer *event*; it is logged only if the current call commits."""
        if self._pending is None:
            raise LedgerError("emit() is only allowed inside a contract call")
        self._pending.append((contract, event))

    def subscribe(self, callback: Subscriber, replay: bool = False) -> None:
        """Register *callback* to receive every committed ``LogEntry``.

        With ``replay=True`` the existing log is delivered first, under the
        same lock, so no entry is missed or delivered out of order.
        """
        with self._lock:
            if replay:
                for entry in self._log:
                    callback(entry)
            self._subscribers.append(callback)

    @property
    def events(self) -> tuple[LogEntry, ...]:
        return tuple(self._log)

    def events_since(self, log_index: int = 0) -> list[LogEntry]:
        return self._log[max(log_index, 0):]

    @property
    def tx_count(self) -> int:
        return self._tx_count

    # ------------------------------------------------------------------
    # Atomic call
    # ------------------------------------------------------------------

    def _next_timestamp(self) -> int:
        now = int(self._clock())
        self._last_timestamp = max(now, self._last_timestamp)
        return self._last_timestamp

    @contextmanager
    def call(
        self,
        contract: DeployedContract,
        sender: str,
        value: int = 0,
        payable: bool = False,
    ) -> Iterator[CallContext]:
        """Run one contract call atomically.

        On any exception raised by the body (or by the value escrow), the
        contract state, balances and buffered events are restored to their
        pre-call values and the exception is re-raised.
        """
        _require_address(sender)
        require_amount(value, "value")

        with self._lock:
            if self._pending is not None:
                raise LedgerError("Re-entrant contract call rejected")

            restore_state = _checkpoint(contract)
            balances_snapshot = dict(self._balances)
            self._pending = []
            ctx = CallContext(
                sender=sender,
                value=value,
                timestamp=self._next_timestamp(),
                tx_index=self._tx_count,
            )

            try:
                if value and not payable:
                    raise InvalidState("Function is not payable")
                self._move(sender, contract.address, value)
                yield ctx
            except BaseException as exc:
                restore_state()
                self._balances = balances_snapshot
                self._pending = None
                REVERTS_TOTAL.labels(
                    contract=contract.address,
                    reason_type=getattr(exc, "kind", type(exc).__name__),
                ).inc()
                log.warning(
                    "host.call_reverted",
                    contract=contract.address,
                    sender=sender,
                    value=value,
                    error=str(exc),
                )
                raise

            # Subscribers receive entries in log order, still under the lock.
            for entry in self._commit(ctx):
                self._notify(entry)

    def _commit(self, ctx: CallContext) -> list[LogEntry]:
        pending, self._pending = self._pending or [], None
        committed: list[LogEntry] = []
        for contract_address, event in pending:
            entry = LogEntry(
                log_index=len(self._log),
                tx_index=ctx.tx_index,
                timestamp=ctx.timestamp,
                contract=contract_address,
                event=event,
            )
            self._log.append(entry)
            committed.append(entry)
        self._tx_count += 1
        return committed

    def _notify(self, entry: LogEntry) -> None:
        for callback in list(self._subscribers):
            try:
                callback(entry)
            except Exception as exc:
                log.warning(
                    "host.subscriber.skip",
                    event_name=entry.name,
                    log_index=entry.log_index,
                    error=str(exc),
                )


# ---------------------------------------------------------------------------
# Decorator for state-changing contract methods
# ---------------------------------------------------------------------------


def external(func: Callable[..., Any] | None = None, *, payable: bool = False) -> Any:
    """Mark a contract method as an externally callable, state-changing call.

    The wrapped method receives a ``CallContext`` as its first argument
    after ``self``; callers pass ``sender=`` (and ``value=`` when payable)
    as keyword arguments instead.
    """

    def decorate(fn: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(fn)
        def wrapper(self: Any, *args: Any, sender: str, value: int = 0, **kwargs: Any) -> Any:
            with self.host.call(self, sender=sender, value=value, payable=payable) as ctx:
                return fn(self, ctx, *args, **kwargs)

        wrapper.payable = payable  # type: ignore[attr-defined]
        return wrapper

    if func is not None:
        return decorate(func)
    return decorate
