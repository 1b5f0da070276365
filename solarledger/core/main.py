"""
solarledger/core/main.py
========================
Solar P2P Ledger — node entry point.

Brings together:

1. ``Settings``          — reads all configuration from environment.
2. ``configure_logging`` — structlog JSON output at ``LOG_LEVEL``.
3. ``HostLedger``        — in-process execution environment.
4. ``EnergyTradingContract`` — deployed by ``LEDGER_OWNER``.
5. ``EventIndexer``      — off-chain view rebuilt from contract events.
6. ``LedgerAPI``         — REST API, /health and /metrics.

Lifecycle
---------
::

    startup → deploy → attach indexer → serve API → wait
                                                     ↓
    SIGINT/SIGTERM ───────────────────────── graceful shutdown

Run
---
::

    LEDGER_OWNER=0xowner python -m solarledger.core.main
"""

from __future__ import annotations

import asyncio
import logging
import signal

import structlog

from solarledger import __version__
from solarledger.core.config import Settings, get_settings
from solarledger.core.contract import EnergyTradingContract
from solarledger.core.host import HostLedger
from solarledger.interfaces.api import LedgerAPI
from solarledger.interfaces.indexer import EventIndexer

log: structlog.BoundLogger = structlog.get_logger(__name__)

_shutdown_event: asyncio.Event


def configure_logging(level: str = "INFO") -> None:
    """Route structlog through JSON rendering with a level filter."""
    level_no = logging.getLevelName(level.upper())
    logging.basicConfig(level=level_no)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(),
    )


def build_ledger(
    cfg: Settings,
) -> tuple[HostLedger, EnergyTradingContract, EventIndexer]:
    """Deploy a fresh contract on a new host and attach an indexer to it."""
    host = HostLedger()
    contract = host.deploy(EnergyTradingContract, owner=cfg.LEDGER_OWNER)
    indexer = EventIndexer(contract=contract.address)
    indexer.attach(host)
    return host, contract, indexer


def build_api(cfg: Settings, contract: EnergyTradingContract, indexer: EventIndexer) -> LedgerAPI:
    return LedgerAPI(
        contract,
        indexer=indexer,
        ledger_id=cfg.LEDGER_ID,
        host=cfg.API_HOST,
        port=cfg.API_PORT,
        api_key=cfg.API_KEY,
        faucet_enabled=cfg.FAUCET_ENABLED,
    )


def _handle_signal(sig: signal.Signals) -> None:
    """Mark the shutdown event so the main coroutine exits cleanly."""
    log.warning("shutdown.signal_received", signal=sig.name)
    _shutdown_event.set()


async def main() -> None:
    """Bootstrap and serve the ledger until a shutdown signal."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    cfg = get_settings()
    configure_logging(cfg.LOG_LEVEL)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _handle_signal, sig)

    _, contract, indexer = build_ledger(cfg)
    api = build_api(cfg, contract, indexer)

    async with api.run():
        log.info(
            "ledger.started",
            ledger_id=cfg.LEDGER_ID,
            version=__version__,
            contract=contract.address,
            owner=contract.owner,
            port=cfg.API_PORT,
        )
        await _shutdown_event.wait()
        log.info("shutdown.starting", summary=indexer.summary())

    log.info("shutdown.complete")


def run() -> None:
    """Console-script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass  # Handled via signal handler inside main()


if __name__ == "__main__":
    run()
