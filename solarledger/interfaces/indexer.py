"""
solarledger/interfaces/indexer.py
=================================
Solar P2P Ledger — Off-chain event indexer.

Rebuilds market aggregates from the four contract events alone, the way an
external indexer would: it only reads the wire form (``LogEntry.to_dict()``)
and never touches contract storage.

Handled events (ABI names):
  ProducerRegistered(producer, energyAmount, pricePerUnit)
  EnergyListed(producer, energyAmount, pricePerUnit)
  EnergyPurchased(consumer, producer, energyAmount, totalCost)
  PriceUpdated(producer, newPrice)

Usage::

    indexer = EventIndexer()
    indexer.attach(host)          # replays history, then follows new events
    indexer.summary()["total_energy_traded"]
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from solarledger.core.host import HostLedger, LogEntry

__all__ = ["EventIndexer", "ProducerSummary", "ConsumerSummary"]

log = structlog.get_logger(__name__)


@dataclass
class ProducerSummary:
    """Producer view reconstructed from events.

    Attributes:
        address:         Producer account.
        listed_energy:   Sum of all EnergyListed amounts.
        sold_energy:     Sum of EnergyPurchased amounts sold by this producer.
        revenue:         Sum of totalCost received.
        price_per_unit:  Last price seen (listing or PriceUpdated).
        registered_at:   Timestamp of the ProducerRegistered event.
    """
    address: str
    listed_energy: int = 0
    sold_energy: int = 0
    revenue: int = 0
    price_per_unit: int = 0
    registered_at: int = 0

    @property
    def remaining_energy(self) -> int:
        return self.listed_energy - self.sold_energy

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["remaining_energy"] = self.remaining_energy
        return data


@dataclass
class ConsumerSummary:
    address: str
    energy_bought: int = 0
    spent: int = 0
    purchases: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EventIndexer:
    """Event-sourced aggregate view of one ledger contract.

    Parameters:
        contract:  Only index events from this contract address
                   (``None`` = index everything the host logs).
    """

    def __init__(self, contract: str | None = None) -> None:
        self.contract = contract
        self.producers: dict[str, ProducerSummary] = {}
        self.consumers: dict[str, ConsumerSummary] = {}
        self.purchase_count: int = 0
        self.total_energy_traded: int = 0
        self.total_value_settled: int = 0
        self._last_log_index: int = -1
        self._handlers = {
            "ProducerRegistered": self._on_producer_registered,
            "EnergyListed": self._on_energy_listed,
            "EnergyPurchased": self._on_energy_purchased,
            "PriceUpdated": self._on_price_updated,
        }

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(self, host: HostLedger) -> None:
        """Replay the host's existing log, then subscribe to new entries."""
        host.subscribe(self.handle, replay=True)
        log.info(
            "indexer.attached",
            contract=self.contract,
            replayed=self._last_log_index + 1,
        )

    def handle(self, entry: LogEntry) -> None:
        """Apply one committed log entry.  Already-seen entries are ignored."""
        if entry.log_index <= self._last_log_index:
            return
        self._last_log_index = entry.log_index
        if self.contract is not None and entry.contract != self.contract:
            return

        payload = entry.to_dict()
        handler = self._handlers.get(payload["event"])
        if handler is None:
            log.debug("indexer.event.unknown", event_name=payload["event"])
            return
        handler(payload["args"], payload["timestamp"])

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _producer(self, address: str) -> ProducerSummary:
        if address not in self.producers:
            self.producers[address] = ProducerSummary(address=address)
        return self.producers[address]

    def _on_producer_registered(self, args: dict[str, Any], timestamp: int) -> None:
        producer = self._producer(args["producer"])
        producer.registered_at = timestamp

    def _on_energy_listed(self, args: dict[str, Any], timestamp: int) -> None:
        producer = self._producer(args["producer"])
        producer.listed_energy += args["energyAmount"]
        producer.price_per_unit = args["pricePerUnit"]

    def _on_price_updated(self, args: dict[str, Any], timestamp: int) -> None:
        self._producer(args["producer"]).price_per_unit = args["newPrice"]

    def _on_energy_purchased(self, args: dict[str, Any], timestamp: int) -> None:
        amount, cost = args["energyAmount"], args["totalCost"]

        producer = self._producer(args["producer"])
        producer.sold_energy += amount
        producer.revenue += cost

        address = args["consumer"]
        consumer = self.consumers.setdefault(address, ConsumerSummary(address=address))
        consumer.energy_bought += amount
        consumer.spent += cost
        consumer.purchases += 1

        self.purchase_count += 1
        self.total_energy_traded += amount
        self.total_value_settled += cost

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    @property
    def last_log_index(self) -> int:
        return self._last_log_index

    def summary(self) -> dict[str, Any]:
        return {
            "contract": self.contract,
            "producers": len(self.producers),
            "consumers": len(self.consumers),
            "purchase_count": self.purchase_count,
            "total_energy_traded": self.total_energy_traded,
            "total_value_settled": self.total_value_settled,
            "last_log_index": self._last_log_index,
        }
