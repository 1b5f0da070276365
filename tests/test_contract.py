"""
tests/test_contract.py
======================
Unit tests for ``solarledger.core.contract.EnergyTradingContract``.

Covers:
* First listing registers the producer; repeat listings top up and
  overwrite the price.
* Purchase bounds, frozen transaction cost, refund of overpayment.
* Sum of transaction amounts equals total energy traded.
* Price updates, deactivation (terminal), emergency withdraw.
* Read accessors for unknown addresses and out-of-range indices.
* Every rejected call leaves state, balances and events untouched, also
  when it fails late with a long transaction log in place.
"""

from __future__ import annotations

from typing import Any

import pytest
from prometheus_client import REGISTRY

from solarledger.core.contract import (
    ConsumerDetails,
    EnergyListed,
    EnergyPurchased,
    EnergyTradingContract,
    PriceUpdated,
    ProducerDetails,
    ProducerRegistered,
    Transaction,
)
from solarledger.core.errors import (
    ContractRevert,
    InsufficientFunds,
    InvalidInput,
    InvalidState,
    Unauthorized,
)
from solarledger.core.host import HostLedger

OWNER = "0xowner"
P = "0xproducer"
P2 = "0xproducer2"
C = "0xconsumer"
C2 = "0xconsumer2"


class StepClock:
    """Deterministic clock: 1_700_000_000, +1 s per call."""

    def __init__(self, start: int = 1_700_000_000) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1
        return float(self.now)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def host() -> HostLedger:
    h = HostLedger(clock=StepClock())
    h.fund(C, 10_000)
    h.fund(C2, 10_000)
    return h


@pytest.fixture()
def ledger(host: HostLedger) -> EnergyTradingContract:
    return host.deploy(EnergyTradingContract, owner=OWNER)


def _snapshot(host: HostLedger, ledger: EnergyTradingContract) -> tuple:
    return (
        [ledger.get_producer_details(a) for a in (P, P2)],
        [ledger.get_consumer_details(a) for a in (C, C2)],
        ledger.get_all_producers(),
        ledger.transaction_count,
        ledger.total_energy_traded,
        list(ledger.state.transactions),
        {a: host.balance_of(a) for a in (P, P2, C, C2, OWNER, ledger.address)},
        len(host.events),
    )


# ---------------------------------------------------------------------------
# register_or_update_listing
# ---------------------------------------------------------------------------


class TestListing:
    def test_first_listing_registers_producer(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        assert ledger.get_producer_details(P) == ProducerDetails(100, 10, True, 100)
        assert ledger.get_producer_count() == 1
        assert ledger.get_all_producers() == [P]

    def test_first_listing_emits_registered_then_listed(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        events = [e.event for e in host.events]
        assert events == [ProducerRegistered(P, 100, 10), EnergyListed(P, 100, 10)]

    def test_repeat_listing_tops_up_and_overwrites_price(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.register_or_update_listing(50, 20, sender=P)
        ledger.register_or_update_listing(5, 7, sender=P)
        assert ledger.get_producer_details(P) == ProducerDetails(155, 7, True, 155)
        assert ledger.get_all_producers() == [P]
        names = [e.name for e in host.events]
        assert names.count("ProducerRegistered") == 1
        assert names.count("EnergyListed") == 3

    def test_registry_keeps_registration_order(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(1, 1, sender=P2)
        ledger.register_or_update_listing(1, 1, sender=P)
        ledger.register_or_update_listing(1, 1, sender=P2)
        assert ledger.get_all_producers() == [P2, P]
        assert ledger.get_producer_count() == 2

    def test_get_all_producers_returns_copy(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(1, 1, sender=P)
        ledger.get_all_producers().append("0xintruder")
        assert ledger.get_all_producers() == [P]

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_energy_rejected(
        self, ledger: EnergyTradingContract, amount: int
    ) -> None:
        with pytest.raises(InvalidInput, match="Energy amount must be greater than 0"):
            ledger.register_or_update_listing(amount, 10, sender=P)
        assert ledger.get_producer_count() == 0

    @pytest.mark.parametrize("price", [0, -1])
    def test_non_positive_price_rejected(
        self, ledger: EnergyTradingContract, price: int
    ) -> None:
        with pytest.raises(InvalidInput, match="Price must be greater than 0"):
            ledger.register_or_update_listing(10, price, sender=P)

    @pytest.mark.parametrize("amount", [1.5, "10", True, None])
    def test_non_integer_energy_rejected(
        self, ledger: EnergyTradingContract, amount: object
    ) -> None:
        with pytest.raises(InvalidInput):
            ledger.register_or_update_listing(amount, 10, sender=P)

    def test_value_on_non_payable_call_rejected(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        with pytest.raises(InvalidState, match="not payable"):
            ledger.register_or_update_listing(10, 10, sender=C, value=5)
        assert host.balance_of(C) == 10_000
        assert ledger.get_producer_count() == 0

    def test_deactivated_producer_cannot_relist(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.deactivate_producer(sender=P)
        before = _snapshot(host, ledger)
        with pytest.raises(InvalidState, match="deactivated"):
            ledger.register_or_update_listing(10, 5, sender=P)
        assert _snapshot(host, ledger) == before
        assert ledger.get_all_producers() == [P]


# ---------------------------------------------------------------------------
# purchase_energy
# ---------------------------------------------------------------------------


class TestPurchase:
    def test_reference_scenario(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        tx_id = ledger.purchase_energy(P, 30, sender=C, value=300)

        assert tx_id == 0
        assert ledger.get_producer_details(P) == ProducerDetails(70, 10, True, 100)
        assert ledger.get_consumer_details(C) == ConsumerDetails(30, 300)
        tx = ledger.get_transaction_details(0)
        assert (tx.producer, tx.consumer, tx.energy_amount) == (P, C, 30)
        assert (tx.price_per_unit, tx.total_cost) == (10, 300)
        assert tx.timestamp > 0
        assert ledger.total_energy_traded == 30
        assert ledger.transaction_count == 1

        # Top-up at a new price leaves the recorded transaction alone
        ledger.register_or_update_listing(50, 20, sender=P)
        assert ledger.get_producer_details(P) == ProducerDetails(120, 20, True, 150)
        assert ledger.get_transaction_details(0) == tx

        # Over-buy is rejected with no state change
        before = _snapshot(host, ledger)
        with pytest.raises(InvalidState, match="Not enough energy available"):
            ledger.purchase_energy(P, 200, sender=C, value=4_000)
        assert _snapshot(host, ledger) == before

    def test_payment_forwarded_to_producer(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.purchase_energy(P, 30, sender=C, value=300)
        assert host.balance_of(P) == 300
        assert host.balance_of(C) == 9_700
        assert ledger.balance == 0

    def test_overpayment_refunded_exactly(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.purchase_energy(P, 30, sender=C, value=1_000)
        assert host.balance_of(P) == 300
        assert host.balance_of(C) == 10_000 - 300
        assert ledger.balance == 0
        assert ledger.get_consumer_details(C).total_spent == 300

    def test_buying_entire_stock_allowed(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(40, 3, sender=P)
        ledger.purchase_energy(P, 40, sender=C, value=120)
        assert ledger.get_producer_details(P).available_energy == 0

    def test_insufficient_payment_rejected(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        before = _snapshot(host, ledger)
        with pytest.raises(InvalidState, match="Insufficient payment"):
            ledger.purchase_energy(P, 30, sender=C, value=299)
        assert _snapshot(host, ledger) == before

    def test_unknown_producer_rejected(self, ledger: EnergyTradingContract) -> None:
        with pytest.raises(InvalidState, match="Producer not active"):
            ledger.purchase_energy("0xnobody", 1, sender=C, value=100)

    def test_zero_amount_rejected(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        with pytest.raises(InvalidInput, match="Energy amount must be greater than 0"):
            ledger.purchase_energy(P, 0, sender=C, value=100)

    def test_payment_beyond_balance_rejected(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        before = _snapshot(host, ledger)
        with pytest.raises(InsufficientFunds):
            ledger.purchase_energy(P, 10, sender="0xbroke", value=100)
        assert _snapshot(host, ledger) == before

    def test_consumer_totals_accumulate(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.register_or_update_listing(100, 4, sender=P2)
        ledger.purchase_energy(P, 5, sender=C, value=50)
        ledger.purchase_energy(P2, 10, sender=C, value=40)
        assert ledger.get_consumer_details(C) == ConsumerDetails(15, 90)

    def test_total_traded_equals_sum_of_transactions(
        self, ledger: EnergyTradingContract
    ) -> None:
        ledger.register_or_update_listing(500, 2, sender=P)
        ledger.register_or_update_listing(500, 3, sender=P2)
        purchases = [(P, 7, C), (P2, 11, C2), (P, 1, C2), (P2, 50, C)]
        for producer, amount, consumer in purchases:
            ledger.purchase_energy(producer, amount, sender=consumer, value=1_000)
            recorded = sum(
                ledger.get_transaction_details(i).energy_amount
                for i in range(ledger.transaction_count)
            )
            assert recorded == ledger.total_energy_traded
        assert ledger.total_energy_traded == 69

    def test_transaction_ids_are_sequential(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(100, 1, sender=P)
        ids = [ledger.purchase_energy(P, 1, sender=C, value=1) for _ in range(4)]
        assert ids == [0, 1, 2, 3]

    def test_purchase_event(self, host: HostLedger, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.purchase_energy(P, 30, sender=C, value=500)
        assert host.events[-1].event == EnergyPurchased(C, P, 30, 300)

    def test_purchase_metrics(self, ledger: EnergyTradingContract) -> None:
        labels = {"contract": ledger.address}
        before = REGISTRY.get_sample_value("solar_ledger_energy_traded_total", labels) or 0.0
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.purchase_energy(P, 30, sender=C, value=300)
        after = REGISTRY.get_sample_value("solar_ledger_energy_traded_total", labels)
        assert after == pytest.approx(before + 30)


# ---------------------------------------------------------------------------
# Rollback after a long history
# ---------------------------------------------------------------------------


class TestRollbackAfterHistory:
    """Late failures inside a call, with a long trade log already in place."""

    @staticmethod
    def _fail_on_emit(contract: str, event: Any) -> None:
        raise RuntimeError("log unavailable")

    def test_purchase_failing_after_mutation_restores_state(
        self, host: HostLedger, ledger: EnergyTradingContract, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        ledger.register_or_update_listing(1_000, 2, sender=P)
        for _ in range(300):
            ledger.purchase_energy(P, 1, sender=C, value=2)
        transactions = ledger.state.transactions
        first, last = transactions[0], transactions[-1]
        before = _snapshot(host, ledger)

        with monkeypatch.context() as m:
            m.setattr(host, "emit", self._fail_on_emit)
            with pytest.raises(RuntimeError, match="log unavailable"):
                ledger.purchase_energy(P, 5, sender=C2, value=10)

        assert _snapshot(host, ledger) == before
        assert ledger.state.transactions is transactions
        assert transactions[0] is first and transactions[-1] is last
        assert ledger.get_consumer_details(C2) == ConsumerDetails(0, 0)
        assert ledger.purchase_energy(P, 5, sender=C2, value=10) == 300

    def test_registration_failing_late_leaves_registry_unchanged(
        self, host: HostLedger, ledger: EnergyTradingContract, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        before = _snapshot(host, ledger)

        with monkeypatch.context() as m:
            m.setattr(host, "emit", self._fail_on_emit)
            with pytest.raises(RuntimeError):
                ledger.register_or_update_listing(50, 5, sender=P2)
            with pytest.raises(RuntimeError):
                ledger.register_or_update_listing(50, 99, sender=P)

        assert _snapshot(host, ledger) == before
        assert ledger.get_all_producers() == [P]
        assert ledger.get_producer_details(P) == ProducerDetails(100, 10, True, 100)


# ---------------------------------------------------------------------------
# update_price
# ---------------------------------------------------------------------------


class TestUpdatePrice:
    def test_price_overwritten(self, host: HostLedger, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.update_price(25, sender=P)
        assert ledger.get_producer_details(P) == ProducerDetails(100, 25, True, 100)
        assert host.events[-1].event == PriceUpdated(P, 25)

    def test_new_price_applies_to_next_purchase_only(
        self, ledger: EnergyTradingContract
    ) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.purchase_energy(P, 10, sender=C, value=100)
        ledger.update_price(15, sender=P)
        ledger.purchase_energy(P, 10, sender=C, value=150)
        first, second = (ledger.get_transaction_details(i) for i in (0, 1))
        assert (first.price_per_unit, first.total_cost) == (10, 100)
        assert (second.price_per_unit, second.total_cost) == (15, 150)

    def test_non_producer_rejected(self, ledger: EnergyTradingContract) -> None:
        with pytest.raises(Unauthorized, match="Not an active producer"):
            ledger.update_price(10, sender=C)

    def test_zero_price_rejected(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        with pytest.raises(InvalidInput, match="Price must be greater than 0"):
            ledger.update_price(0, sender=P)
        assert ledger.get_producer_details(P).price_per_unit == 10

    def test_inactive_producer_rejected(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.deactivate_producer(sender=P)
        with pytest.raises(Unauthorized):
            ledger.update_price(12, sender=P)


# ---------------------------------------------------------------------------
# deactivate_producer
# ---------------------------------------------------------------------------


class TestDeactivate:
    def test_deactivated_producer_keeps_details(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.purchase_energy(P, 20, sender=C, value=200)
        ledger.deactivate_producer(sender=P)
        assert ledger.get_producer_details(P) == ProducerDetails(80, 10, False, 100)
        assert ledger.get_all_producers() == [P]

    def test_deactivated_producer_cannot_sell(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        ledger.register_or_update_listing(100, 10, sender=P)
        ledger.deactivate_producer(sender=P)
        before = _snapshot(host, ledger)
        with pytest.raises(InvalidState, match="Producer not active"):
            ledger.purchase_energy(P, 1, sender=C, value=10)
        assert _snapshot(host, ledger) == before

    def test_unknown_caller_rejected(self, ledger: EnergyTradingContract) -> None:
        with pytest.raises(Unauthorized, match="Not an active producer"):
            ledger.deactivate_producer(sender=C)

    def test_second_deactivation_rejected(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(1, 1, sender=P)
        ledger.deactivate_producer(sender=P)
        with pytest.raises(Unauthorized):
            ledger.deactivate_producer(sender=P)


# ---------------------------------------------------------------------------
# emergency_withdraw
# ---------------------------------------------------------------------------


class TestEmergencyWithdraw:
    def test_owner_sweeps_residual_balance(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        host.fund(ledger.address, 777)
        assert ledger.emergency_withdraw(sender=OWNER) == 777
        assert ledger.balance == 0
        assert host.balance_of(OWNER) == 777

    def test_zero_balance_sweeps_nothing(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        assert ledger.emergency_withdraw(sender=OWNER) == 0
        assert host.balance_of(OWNER) == 0

    def test_non_owner_rejected(
        self, host: HostLedger, ledger: EnergyTradingContract
    ) -> None:
        host.fund(ledger.address, 50)
        with pytest.raises(Unauthorized, match="Only owner"):
            ledger.emergency_withdraw(sender=C)
        assert ledger.balance == 50

    def test_owner_property(self, ledger: EnergyTradingContract) -> None:
        assert ledger.owner == OWNER


# ---------------------------------------------------------------------------
# Read accessors
# ---------------------------------------------------------------------------


class TestReadAccessors:
    def test_unknown_producer_is_zero_record(self, ledger: EnergyTradingContract) -> None:
        assert ledger.get_producer_details("0xnobody") == ProducerDetails(0, 0, False, 0)

    def test_unknown_consumer_is_zero_record(self, ledger: EnergyTradingContract) -> None:
        assert ledger.get_consumer_details("0xnobody") == ConsumerDetails(0, 0)

    def test_transaction_index_out_of_range(self, ledger: EnergyTradingContract) -> None:
        with pytest.raises(InvalidState, match="Invalid transaction ID"):
            ledger.get_transaction_details(0)

    def test_negative_transaction_index(self, ledger: EnergyTradingContract) -> None:
        with pytest.raises(InvalidInput):
            ledger.get_transaction_details(-1)

    def test_transaction_is_frozen(self, ledger: EnergyTradingContract) -> None:
        ledger.register_or_update_listing(10, 2, sender=P)
        ledger.purchase_energy(P, 1, sender=C, value=2)
        tx = ledger.get_transaction_details(0)
        assert isinstance(tx, Transaction)
        with pytest.raises(AttributeError):
            tx.total_cost = 0  # type: ignore[misc]

    def test_all_reverts_share_base_class(self, ledger: EnergyTradingContract) -> None:
        with pytest.raises(ContractRevert):
            ledger.purchase_energy(P, 1, sender=C, value=1)


# ---------------------------------------------------------------------------
# Event wire format
# ---------------------------------------------------------------------------


class TestEventWireFormat:
    def test_purchase_event_field_order(self) -> None:
        d = EnergyPurchased("0xc", "0xp", 3, 30).to_dict()
        assert d["event"] == "EnergyPurchased"
        assert list(d["args"]) == ["consumer", "producer", "energyAmount", "totalCost"]

    def test_listing_event_field_order(self) -> None:
        for cls in (ProducerRegistered, EnergyListed):
            assert list(cls("0xp", 1, 2).to_dict()["args"]) == [
                "producer",
                "energyAmount",
                "pricePerUnit",
            ]

    def test_price_event_fields(self) -> None:
        assert PriceUpdated("0xp", 9).to_dict() == {
            "event": "PriceUpdated",
            "args": {"producer": "0xp", "newPrice": 9},
        }
