"""
solarledger/core/contract.py
============================
Solar P2P Ledger — Energy trading contract.

Producers list excess solar energy at a price per unit; consumers buy from
a chosen producer and pay in the same call.  Payment is forwarded to the
producer immediately and any overpayment is refunded, so the contract holds
no balance between calls.  Every purchase is appended to a dense,
immutable transaction log.

Lifecycle of a producer::

    unregistered ──register_or_update_listing──► active ──deactivate_producer──► inactive
                                                   ▲  │                          (terminal)
                                                   └──┘ top-up / update_price

Repeat listings are additive for energy but overwrite the price.  That mix
is kept as-is: changing it would alter what existing producers expect.

Usage::

    host = HostLedger()
    ledger = host.deploy(EnergyTradingContract, owner="0xowner")
    ledger.register_or_update_listing(100, 10, sender="0xproducer")
    host.fund("0xconsumer", 300)
    tx_id = ledger.purchase_energy("0xproducer", 30, sender="0xconsumer", value=300)
    ledger.get_transaction_details(tx_id).total_cost   # 300
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import TYPE_CHECKING, Any, ClassVar, NamedTuple

import structlog

from solarledger.core.errors import InvalidInput, InvalidState, Unauthorized
from solarledger.core.host import CallContext, external, require_amount
from solarledger.interfaces.metrics import (
    ACTIVE_PRODUCERS,
    ENERGY_TRADED_TOTAL,
    LISTINGS_TOTAL,
    PRODUCERS_REGISTERED_TOTAL,
    PURCHASES_TOTAL,
    VALUE_SETTLED_TOTAL,
)

if TYPE_CHECKING:
    from solarledger.core.host import HostLedger

__all__ = [
    "EnergyTradingContract",
    "LedgerState",
    "Producer",
    "Consumer",
    "Transaction",
    "ProducerDetails",
    "ConsumerDetails",
    "ProducerRegistered",
    "EnergyListed",
    "EnergyPurchased",
    "PriceUpdated",
]

log = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class Producer:
    """A registered seller and its current listing.

    Attributes:
        address:                Producer account.
        available_energy:       Energy units still for sale.
        price_per_unit:         Current asking price.
        is_active:              False once deactivated (terminal).
        total_energy_produced:  Sum of every amount ever listed.
    """
    address: str
    available_energy: int
    price_per_unit: int
    is_active: bool = True
    total_energy_produced: int = 0

    def details(self) -> ProducerDetails:
        return ProducerDetails(
            self.available_energy,
            self.price_per_unit,
            self.is_active,
            self.total_energy_produced,
        )


@dataclass
class Consumer:
    address: str
    total_energy_consumed: int = 0
    total_spent: int = 0

    def details(self) -> ConsumerDetails:
        return ConsumerDetails(self.total_energy_consumed, self.total_spent)


@dataclass(frozen=True)
class Transaction:
    """Immutable record of one completed purchase."""
    producer: str
    consumer: str
    energy_amount: int
    price_per_unit: int
    total_cost: int
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ProducerDetails(NamedTuple):
    available_energy: int
    price_per_unit: int
    is_active: bool
    total_energy_produced: int


class ConsumerDetails(NamedTuple):
    total_energy_consumed: int
    total_spent: int


_EMPTY_PRODUCER = ProducerDetails(0, 0, False, 0)
_EMPTY_CONSUMER = ConsumerDetails(0, 0)


@dataclass
class LedgerState:
    """All mutable contract storage, checkpointed by the host on every call.

    Transactions are frozen and both lists only grow, so a checkpoint keeps
    their lengths; producer and consumer records are copied one level deep.
    """
    producers: dict[str, Producer] = field(default_factory=dict)
    consumers: dict[str, Consumer] = field(default_factory=dict)
    producer_list: list[str] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)
    transaction_count: int = 0
    total_energy_traded: int = 0

    def checkpoint(self) -> _Checkpoint:
        return _Checkpoint(
            producers={a: replace(p) for a, p in self.producers.items()},
            consumers={a: replace(c) for a, c in self.consumers.items()},
            producer_count=len(self.producer_list),
            transaction_len=len(self.transactions),
            transaction_count=self.transaction_count,
            total_energy_traded=self.total_energy_traded,
        )

    def restore(self, checkpoint: _Checkpoint) -> None:
        self.producers = checkpoint.producers
        self.consumers = checkpoint.consumers
        del self.producer_list[checkpoint.producer_count:]
        del self.transactions[checkpoint.transaction_len:]
        self.transaction_count = checkpoint.transaction_count
        self.total_energy_traded = checkpoint.total_energy_traded


class _Checkpoint(NamedTuple):
    producers: dict[str, Producer]
    consumers: dict[str, Consumer]
    producer_count: int
    transaction_len: int
    transaction_count: int
    total_energy_traded: int


# ---------------------------------------------------------------------------
# Events — ABI names and field order are relied on by off-chain indexers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Event:
    NAME: ClassVar[str] = ""
    ABI: ClassVar[tuple[tuple[str, str], ...]] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.NAME,
            "args": {abi_name: getattr(self, attr) for attr, abi_name in self.ABI},
        }


@dataclass(frozen=True)
class ProducerRegistered(_Event):
    NAME: ClassVar[str] = "ProducerRegistered"
    ABI: ClassVar[tuple[tuple[str, str], ...]] = (
        ("producer", "producer"),
        ("energy_amount", "energyAmount"),
        ("price_per_unit", "pricePerUnit"),
    )
    producer: str
    energy_amount: int
    price_per_unit: int


@dataclass(frozen=True)
class EnergyListed(_Event):
    NAME: ClassVar[str] = "EnergyListed"
    ABI: ClassVar[tuple[tuple[str, str], ...]] = (
        ("producer", "producer"),
        ("energy_amount", "energyAmount"),
        ("price_per_unit", "pricePerUnit"),
    )
    producer: str
    energy_amount: int
    price_per_unit: int


@dataclass(frozen=True)
class EnergyPurchased(_Event):
    NAME: ClassVar[str] = "EnergyPurchased"
    ABI: ClassVar[tuple[tuple[str, str], ...]] = (
        ("consumer", "consumer"),
        ("producer", "producer"),
        ("energy_amount", "energyAmount"),
        ("total_cost", "totalCost"),
    )
    consumer: str
    producer: str
    energy_amount: int
    total_cost: int


@dataclass(frozen=True)
class PriceUpdated(_Event):
    NAME: ClassVar[str] = "PriceUpdated"
    ABI: ClassVar[tuple[tuple[str, str], ...]] = (
        ("producer", "producer"),
        ("new_price", "newPrice"),
    )
    producer: str
    new_price: int


def _require_positive(value: object, reason: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{reason}, got {value!r}")
    if value <= 0:
        raise InvalidInput(reason)
    return value


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class EnergyTradingContract:
    """Peer-to-peer solar energy ledger.

    Parameters:
        host:     ``HostLedger`` the contract is deployed on.
        address:  Contract account address (assigned by the host).
        owner:    Deployer; the only account allowed to call
                  ``emergency_withdraw``.
    """

    def __init__(self, host: HostLedger, address: str, owner: str) -> None:
        self.host = host
        self.address = address
        self._owner = owner
        self.state = LedgerState()

    # ------------------------------------------------------------------
    # Producer operations
    # ------------------------------------------------------------------

    @external
    def register_or_update_listing(
        self, ctx: CallContext, energy_amount: int, price_per_unit: int
    ) -> None:
        """List *energy_amount* units at *price_per_unit*.

        The first call registers the caller as a producer.  Later calls add
        to the available and produced totals and replace the price.
        """
        _require_positive(energy_amount, "Energy amount must be greater than 0")
        _require_positive(price_per_unit, "Price must be greater than 0")

        producer = self.state.producers.get(ctx.sender)
        if producer is None:
            producer = Producer(
                address=ctx.sender,
                available_energy=energy_amount,
                price_per_unit=price_per_unit,
                is_active=True,
                total_energy_produced=energy_amount,
            )
            self.state.producers[ctx.sender] = producer
            self.state.producer_list.append(ctx.sender)
            self.host.emit(
                self.address,
                ProducerRegistered(ctx.sender, energy_amount, price_per_unit),
            )
            PRODUCERS_REGISTERED_TOTAL.labels(contract=self.address).inc()
            ACTIVE_PRODUCERS.labels(contract=self.address).inc()
            log.info(
                "ledger.producer_registered",
                producer=ctx.sender,
                energy=energy_amount,
                price=price_per_unit,
                producer_count=len(self.state.producer_list),
            )
        elif not producer.is_active:
            raise InvalidState("Producer has been deactivated")
        else:
            producer.available_energy += energy_amount
            producer.total_energy_produced += energy_amount
            producer.price_per_unit = price_per_unit

        self.host.emit(
            self.address, EnergyListed(ctx.sender, energy_amount, price_per_unit)
        )
        LISTINGS_TOTAL.labels(contract=self.address).inc()
        log.info(
            "ledger.energy_listed",
            producer=ctx.sender,
            energy=energy_amount,
            price=price_per_unit,
            available=producer.available_energy,
        )

    @external
    def update_price(self, ctx: CallContext, new_price_per_unit: int) -> None:
        producer = self._active_producer(ctx.sender)
        _require_positive(new_price_per_unit, "Price must be greater than 0")

        old_price = producer.price_per_unit
        producer.price_per_unit = new_price_per_unit
        self.host.emit(self.address, PriceUpdated(ctx.sender, new_price_per_unit))
        log.info(
            "ledger.price_updated",
            producer=ctx.sender,
            old_price=old_price,
            new_price=new_price_per_unit,
        )

    @external
    def deactivate_producer(self, ctx: CallContext) -> None:
        """Stop the caller from selling.  Records stay queryable."""
        producer = self._active_producer(ctx.sender)
        producer.is_active = False
        ACTIVE_PRODUCERS.labels(contract=self.address).dec()
        log.info(
            "ledger.producer_deactivated",
            producer=ctx.sender,
            stranded_energy=producer.available_energy,
        )

    # ------------------------------------------------------------------
    # Consumer operations
    # ------------------------------------------------------------------

    @external(payable=True)
    def purchase_energy(
        self, ctx: CallContext, producer_address: str, energy_amount: int
    ) -> int:
        """Buy *energy_amount* units from *producer_address*.

        The attached ``value`` must cover ``energy_amount * price_per_unit``
        at the producer's current price.  Exactly the total cost is
        forwarded to the producer and the remainder is refunded to the
        caller.

        Returns:
            Index of the new transaction in the log.
        """
        _require_positive(energy_amount, "Energy amount must be greater than 0")

        producer = self.state.producers.get(producer_address)
        if producer is None or not producer.is_active:
            raise InvalidState("Producer not active")
        if producer.available_energy < energy_amount:
            raise InvalidState("Not enough energy available")
        total_cost = energy_amount * producer.price_per_unit
        if ctx.value < total_cost:
            raise InvalidState("Insufficient payment")

        producer.available_energy -= energy_amount

        consumer = self.state.consumers.get(ctx.sender)
        if consumer is None:
            consumer = self.state.consumers[ctx.sender] = Consumer(ctx.sender)
        consumer.total_energy_consumed += energy_amount
        consumer.total_spent += total_cost

        tx_id = self.state.transaction_count
        self.state.transactions.append(
            Transaction(
                producer=producer_address,
                consumer=ctx.sender,
                energy_amount=energy_amount,
                price_per_unit=producer.price_per_unit,
                total_cost=total_cost,
                timestamp=ctx.timestamp,
            )
        )
        self.state.transaction_count += 1
        self.state.total_energy_traded += energy_amount

        self.host.transfer(self.address, producer_address, total_cost)
        refund = ctx.value - total_cost
        if refund > 0:
            self.host.transfer(self.address, ctx.sender, refund)

        self.host.emit(
            self.address,
            EnergyPurchased(ctx.sender, producer_address, energy_amount, total_cost),
        )

        PURCHASES_TOTAL.labels(contract=self.address).inc()
        ENERGY_TRADED_TOTAL.labels(contract=self.address).inc(energy_amount)
        VALUE_SETTLED_TOTAL.labels(contract=self.address).inc(total_cost)
        log.info(
            "ledger.energy_purchased",
            tx_id=tx_id,
            consumer=ctx.sender,
            producer=producer_address,
            energy=energy_amount,
            total_cost=total_cost,
            refund=refund,
        )
        return tx_id

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @external
    def emergency_withdraw(self, ctx: CallContext) -> int:
        """Sweep any residual contract balance to the owner.

        Returns:
            Amount swept (0 when the contract holds nothing).
        """
        if ctx.sender != self._owner:
            raise Unauthorized("Only owner can call this function")
        amount = self.host.balance_of(self.address)
        self.host.transfer(self.address, self._owner, amount)
        log.warning("ledger.emergency_withdraw", owner=self._owner, amount=amount)
        return amount

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def transaction_count(self) -> int:
        return self.state.transaction_count

    @property
    def total_energy_traded(self) -> int:
        return self.state.total_energy_traded

    @property
    def balance(self) -> int:
        return self.host.balance_of(self.address)

    def get_producer_count(self) -> int:
        return len(self.state.producer_list)

    def get_all_producers(self) -> list[str]:
        """Producer addresses in registration order."""
        return list(self.state.producer_list)

    def get_producer_details(self, address: str) -> ProducerDetails:
        producer = self.state.producers.get(address)
        return producer.details() if producer is not None else _EMPTY_PRODUCER

    def get_consumer_details(self, address: str) -> ConsumerDetails:
        consumer = self.state.consumers.get(address)
        return consumer.details() if consumer is not None else _EMPTY_CONSUMER

    def get_transaction_details(self, transaction_id: int) -> Transaction:
        require_amount(transaction_id, "transaction_id")
        if transaction_id >= self.state.transaction_count:
            raise InvalidState("Invalid transaction ID")
        return self.state.transactions[transaction_id]

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _active_producer(self, address: str) -> Producer:
        producer = self.state.producers.get(address)
        if producer is None or not producer.is_active:
            raise Unauthorized("Not an active producer")
        return producer
