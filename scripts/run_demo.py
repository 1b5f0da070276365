"""
Solar P2P Ledger — Market Session Demo
======================================
Runs a scripted trading session against an in-process ledger and prints
the resulting state and indexer summary.

Session:
    1. Producer lists 100 units at 10.
    2. Consumer buys 30 units, paying 320 (20 refunded).
    3. Producer tops up 50 units at a new price of 20.
    4. Consumer tries to buy 200 units (rejected, nothing changes).

Usage:
    python scripts/run_demo.py
    python scripts/run_demo.py --output session.json
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Ensure the repo root is on the path when run as a script
_REPO_ROOT = Path(__file__).parent.parent
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from solarledger.core.contract import EnergyTradingContract  # noqa: E402
from solarledger.core.errors import ContractRevert  # noqa: E402
from solarledger.core.host import HostLedger  # noqa: E402
from solarledger.core.main import configure_logging  # noqa: E402
from solarledger.interfaces.indexer import EventIndexer  # noqa: E402

OWNER = "0xowner"
PRODUCER = "0xproducer"
CONSUMER = "0xconsumer"


def run_session() -> dict:
    host = HostLedger()
    ledger = host.deploy(EnergyTradingContract, owner=OWNER)
    indexer = EventIndexer(contract=ledger.address)
    indexer.attach(host)
    host.fund(CONSUMER, 5_000)

    ledger.register_or_update_listing(100, 10, sender=PRODUCER)
    tx_id = ledger.purchase_energy(PRODUCER, 30, sender=CONSUMER, value=320)
    ledger.register_or_update_listing(50, 20, sender=PRODUCER)

    rejected = None
    try:
        ledger.purchase_energy(PRODUCER, 200, sender=CONSUMER, value=4_000)
    except ContractRevert as exc:
        rejected = exc.reason

    return {
        "contract": ledger.address,
        "producer": ledger.get_producer_details(PRODUCER)._asdict(),
        "consumer": ledger.get_consumer_details(CONSUMER)._asdict(),
        "first_transaction": ledger.get_transaction_details(tx_id).to_dict(),
        "rejected_purchase": rejected,
        "balances": {
            PRODUCER: host.balance_of(PRODUCER),
            CONSUMER: host.balance_of(CONSUMER),
            ledger.address: ledger.balance,
        },
        "indexer": indexer.summary(),
        "events": [e.to_dict() for e in host.events],
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Solar P2P Ledger demo session")
    parser.add_argument("--output", default=None, help="Write the session JSON here")
    parser.add_argument("--log-level", default="WARNING", help="structlog level")
    args = parser.parse_args()

    configure_logging(args.log_level)
    results = run_session()

    text = json.dumps(results, indent=2)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(text)
        print(f"Session saved to {args.output}")
    else:
        print(text)


if __name__ == "__main__":
    main()
