"""
solarledger/interfaces/api.py
=============================
Solar P2P Ledger — REST API (aiohttp).

Exposes the contract's call surface over HTTP:

  GET  /api/v1/producers                 → count + addresses in registration order
  GET  /api/v1/producers/{address}       → producer details (zeros if unknown)
  GET  /api/v1/consumers/{address}       → consumer details (zeros if unknown)
  GET  /api/v1/transactions/{index}      → one transaction record
  GET  /api/v1/stats                     → owner, counters, contract balance
  GET  /api/v1/events?since=N            → committed events from log index N
  GET  /api/v1/indexer                   → off-chain indexer summary
  GET  /api/v1/accounts/{address}        → account balance
  POST /api/v1/listings                  → register_or_update_listing
  POST /api/v1/purchases                 → purchase_energy
  POST /api/v1/price                     → update_price
  POST /api/v1/deactivate                → deactivate_producer
  POST /api/v1/emergency-withdraw        → emergency_withdraw
  POST /api/v1/accounts/{address}/fund   → dev faucet (only if enabled)
  GET  /health, GET /metrics

The caller identity is taken from the ``caller`` field of each POST body.
Auth: Bearer token on POST routes when ``api_key`` is set (empty = dev mode).

Reverts map to HTTP status codes: invalid input 400, insufficient funds
402, unauthorized 403, invalid state 409.

Usage::

    api = LedgerAPI(contract, indexer=indexer, port=8080)
    async with api.run():
        ...
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import structlog
from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

from solarledger import __version__
from solarledger.core.contract import EnergyTradingContract
from solarledger.core.errors import (
    InsufficientFunds,
    InvalidInput,
    InvalidState,
    LedgerError,
    Unauthorized,
)
from solarledger.interfaces.indexer import EventIndexer
from solarledger.interfaces.metrics import generate_metrics

__all__ = ["LedgerAPI"]

log = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)
Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

_STATUS_BY_ERROR: tuple[tuple[type[LedgerError], int], ...] = (
    (InvalidInput, 400),
    (InsufficientFunds, 402),
    (Unauthorized, 403),
    (InvalidState, 409),
)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class _CallerRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    caller: str = Field(min_length=1)


class ListingRequest(_CallerRequest):
    energy_amount: StrictInt
    price_per_unit: StrictInt


class PurchaseRequest(_CallerRequest):
    producer: str = Field(min_length=1)
    energy_amount: StrictInt
    payment: StrictInt = Field(ge=0)


class PriceRequest(_CallerRequest):
    price_per_unit: StrictInt


class FundRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: StrictInt = Field(gt=0)


def _json_response(data: Any, status: int = 200) -> web.Response:
    return web.Response(
        text=json.dumps(data, indent=2),
        content_type="application/json",
        status=status,
    )


def _status_for(exc: LedgerError) -> int:
    for cls, status in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Render ledger reverts and body validation errors as JSON."""
    try:
        return await handler(request)
    except LedgerError as exc:
        status = _status_for(exc)
        log.info(
            "api.call_rejected",
            path=request.path,
            status=status,
            reason=exc.reason,
        )
        return _json_response(
            {"error": exc.reason, "type": getattr(exc, "kind", "error")},
            status=status,
        )
    except ValidationError as exc:
        details = exc.errors(include_url=False, include_context=False)
        return _json_response(
            {"error": "Invalid request body", "details": details},
            status=400,
        )


class LedgerAPI:
    """aiohttp front-end for one deployed ``EnergyTradingContract``.

    Parameters:
        contract:        The deployed contract.
        indexer:         Optional ``EventIndexer`` exposed at /api/v1/indexer.
        ledger_id:       Label returned by /health.
        host:            Bind address (default ``0.0.0.0``).
        port:            TCP port (default ``8080``).
        api_key:         Bearer token for POST routes (empty = no auth).
        faucet_enabled:  Whether the dev funding route is served.
    """

    def __init__(
        self,
        contract: EnergyTradingContract,
        indexer: EventIndexer | None = None,
        ledger_id: str = "solar-p2p-001",
        host: str = "0.0.0.0",
        port: int = 8080,
        api_key: str = "",
        faucet_enabled: bool = False,
    ) -> None:
        self.contract = contract
        self.indexer = indexer
        self.ledger_id = ledger_id
        self.host = host
        self.port = port
        self.api_key = api_key
        self.faucet_enabled = faucet_enabled
        self._start_time = time.monotonic()
        self._runner: web.AppRunner | None = None
        self.app = self._build_app()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_auth(self, request: web.Request) -> bool:
        """Return True if auth is satisfied (no-op in dev mode)."""
        if not self.api_key:
            return True
        auth = request.headers.get("Authorization", "")
        return bool(auth == f"Bearer {self.api_key}")

    async def _body(self, request: web.Request, model: type[M]) -> M:
        if not self._check_auth(request):
            raise web.HTTPUnauthorized(
                text='{"error": "Unauthorized"}', content_type="application/json"
            )
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise web.HTTPBadRequest(
                text='{"error": "Body must be valid JSON"}',
                content_type="application/json",
            )
        return model.model_validate(payload)

    @staticmethod
    def _int_param(name: str, raw: str) -> int:
        try:
            return int(raw)
        except ValueError:
            raise InvalidInput(f"{name} must be an integer, got {raw!r}")

    # ------------------------------------------------------------------
    # Read routes
    # ------------------------------------------------------------------

    async def handle_producers(self, request: web.Request) -> web.Response:
        producers = self.contract.get_all_producers()
        return _json_response(
            {"count": self.contract.get_producer_count(), "producers": producers}
        )

    async def handle_producer(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        details = self.contract.get_producer_details(address)
        return _json_response({"address": address, **details._asdict()})

    async def handle_consumer(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        details = self.contract.get_consumer_details(address)
        return _json_response({"address": address, **details._asdict()})

    async def handle_transaction(self, request: web.Request) -> web.Response:
        index = self._int_param("index", request.match_info["index"])
        tx = self.contract.get_transaction_details(index)
        return _json_response({"id": index, **tx.to_dict()})

    async def handle_stats(self, request: web.Request) -> web.Response:
        return _json_response(
            {
                "contract": self.contract.address,
                "owner": self.contract.owner,
                "producer_count": self.contract.get_producer_count(),
                "transaction_count": self.contract.transaction_count,
                "total_energy_traded": self.contract.total_energy_traded,
                "balance": self.contract.balance,
            }
        )

    async def handle_events(self, request: web.Request) -> web.Response:
        since = self._int_param("since", request.rel_url.query.get("since", "0"))
        entries = self.contract.host.events_since(since)
        return _json_response({"events": [e.to_dict() for e in entries]})

    async def handle_indexer(self, request: web.Request) -> web.Response:
        if self.indexer is None:
            raise web.HTTPNotFound(
                text='{"error": "Indexer not attached"}', content_type="application/json"
            )
        return _json_response(
            {
                **self.indexer.summary(),
                "producer_summaries": [p.to_dict() for p in self.indexer.producers.values()],
            }
        )

    async def handle_account(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        return _json_response(
            {"address": address, "balance": self.contract.host.balance_of(address)}
        )

    # ------------------------------------------------------------------
    # Write routes
    # ------------------------------------------------------------------

    async def handle_listing(self, request: web.Request) -> web.Response:
        body = await self._body(request, ListingRequest)
        self.contract.register_or_update_listing(
            body.energy_amount, body.price_per_unit, sender=body.caller
        )
        details = self.contract.get_producer_details(body.caller)
        return _json_response({"address": body.caller, **details._asdict()}, status=201)

    async def handle_purchase(self, request: web.Request) -> web.Response:
        body = await self._body(request, PurchaseRequest)
        tx_id = self.contract.purchase_energy(
            body.producer, body.energy_amount, sender=body.caller, value=body.payment
        )
        tx = self.contract.get_transaction_details(tx_id)
        return _json_response(
            {"id": tx_id, **tx.to_dict(), "refund": body.payment - tx.total_cost},
            status=201,
        )

    async def handle_price(self, request: web.Request) -> web.Response:
        body = await self._body(request, PriceRequest)
        self.contract.update_price(body.price_per_unit, sender=body.caller)
        details = self.contract.get_producer_details(body.caller)
        return _json_response({"address": body.caller, **details._asdict()})

    async def handle_deactivate(self, request: web.Request) -> web.Response:
        body = await self._body(request, _CallerRequest)
        self.contract.deactivate_producer(sender=body.caller)
        details = self.contract.get_producer_details(body.caller)
        return _json_response({"address": body.caller, **details._asdict()})

    async def handle_emergency_withdraw(self, request: web.Request) -> web.Response:
        body = await self._body(request, _CallerRequest)
        amount = self.contract.emergency_withdraw(sender=body.caller)
        return _json_response({"owner": self.contract.owner, "withdrawn": amount})

    async def handle_fund(self, request: web.Request) -> web.Response:
        if not self.faucet_enabled:
            raise web.HTTPNotFound()
        body = await self._body(request, FundRequest)
        address = request.match_info["address"]
        balance = self.contract.host.fund(address, body.amount)
        return _json_response({"address": address, "balance": balance})

    # ------------------------------------------------------------------
    # Health & metrics
    # ------------------------------------------------------------------

    async def handle_health(self, request: web.Request) -> web.Response:
        return _json_response(
            {
                "status": "ok",
                "ledger_id": self.ledger_id,
                "version": __version__,
                "contract": self.contract.address,
                "uptime_s": round(time.monotonic() - self._start_time, 1),
                "transaction_count": self.contract.transaction_count,
            }
        )

    async def handle_metrics(self, request: web.Request) -> web.Response:
        return web.Response(body=generate_metrics(), content_type="text/plain")

    # ------------------------------------------------------------------
    # App construction & lifecycle
    # ------------------------------------------------------------------

    def _build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/metrics", self.handle_metrics)
        app.router.add_get("/api/v1/producers", self.handle_producers)
        app.router.add_get("/api/v1/producers/{address}", self.handle_producer)
        app.router.add_get("/api/v1/consumers/{address}", self.handle_consumer)
        app.router.add_get("/api/v1/transactions/{index}", self.handle_transaction)
        app.router.add_get("/api/v1/stats", self.handle_stats)
        app.router.add_get("/api/v1/events", self.handle_events)
        app.router.add_get("/api/v1/indexer", self.handle_indexer)
        app.router.add_get("/api/v1/accounts/{address}", self.handle_account)
        app.router.add_post("/api/v1/listings", self.handle_listing)
        app.router.add_post("/api/v1/purchases", self.handle_purchase)
        app.router.add_post("/api/v1/price", self.handle_price)
        app.router.add_post("/api/v1/deactivate", self.handle_deactivate)
        app.router.add_post("/api/v1/emergency-withdraw", self.handle_emergency_withdraw)
        app.router.add_post("/api/v1/accounts/{address}/fund", self.handle_fund)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info(
            "api.started",
            host=self.host,
            port=self.port,
            auth=bool(self.api_key),
            faucet=self.faucet_enabled,
        )

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            log.info("api.stopped")

    @asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """
        Async context manager — serves the API for the duration of the block.

        Example::

            async with api.run():
                await shutdown_event.wait()
        """
        await self.start()
        try:
            yield
        finally:
            await self.stop()

    async def serve_forever(self) -> None:
        """Run the HTTP server until cancelled."""
        async with self.run():
            await asyncio.Event().wait()
