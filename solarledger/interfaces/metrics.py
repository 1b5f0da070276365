"""
solarledger/interfaces/metrics.py
=================================
Solar P2P Ledger — Prometheus Metrics Registry.

Exposes ledger metrics via the ``prometheus_client`` library.  Counters are
updated by the contract after each committed call and by the host ledger on
every revert.

Endpoint: GET /metrics  (served by ``LedgerAPI``)
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    generate_latest,
)

__all__ = [
    "PURCHASES_TOTAL",
    "ENERGY_TRADED_TOTAL",
    "VALUE_SETTLED_TOTAL",
    "PRODUCERS_REGISTERED_TOTAL",
    "LISTINGS_TOTAL",
    "REVERTS_TOTAL",
    "ACTIVE_PRODUCERS",
    "CONTENT_TYPE_LATEST",
    "generate_metrics",
]

# ---------------------------------------------------------------------------
# Counters — monotonically increasing
# ---------------------------------------------------------------------------

PURCHASES_TOTAL: Counter = Counter(
    "solar_ledger_purchases_total",
    "Total number of committed energy purchases.",
    ["contract"],
)

ENERGY_TRADED_TOTAL: Counter = Counter(
    "solar_ledger_energy_traded_total",
    "Cumulative energy units sold through the ledger.",
    ["contract"],
)

VALUE_SETTLED_TOTAL: Counter = Counter(
    "solar_ledger_value_settled_total",
    "Cumulative payment forwarded from consumers to producers.",
    ["contract"],
)

PRODUCERS_REGISTERED_TOTAL: Counter = Counter(
    "solar_ledger_producers_registered_total",
    "Number of producers that completed a first listing.",
    ["contract"],
)

LISTINGS_TOTAL: Counter = Counter(
    "solar_ledger_listings_total",
    "Number of listing calls (first registrations and top-ups).",
    ["contract"],
)

REVERTS_TOTAL: Counter = Counter(
    "solar_ledger_reverts_total",
    "Number of aborted ledger calls, by error category.",
    ["contract", "reason_type"],
)

# ---------------------------------------------------------------------------
# Gauges — current state
# ---------------------------------------------------------------------------

ACTIVE_PRODUCERS: Gauge = Gauge(
    "solar_ledger_active_producers",
    "Producers currently allowed to sell.",
    ["contract"],
)


def generate_metrics() -> bytes:
    """Return the current metrics snapshot as Prometheus text format."""
    return generate_latest(REGISTRY)
