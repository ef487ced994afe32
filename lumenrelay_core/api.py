"""
REST / HTTP API server for LumenRelay.

Built on ``aiohttp``.  All routes live under the configured prefix
(``/api`` by default).

Endpoints
---------
POST /wallet/details                 Account details for {accountId}
GET  /wallet/transactions/<account>  Transaction history (?limit=1..200)
POST /transaction/send               Native payment from the signing account
POST /payment/send                   Native or issued-asset payment
GET  /balance                        Balances of the signing account
GET  /health                         Liveness and signing account id

Errors
------
Every failure is rendered as ``{"error": <message>, ...}`` by the error
middleware: 4xx for caller faults, 5xx for ledger and configuration faults.
Key material never appears in a response.

Security
--------
- Optional API-key authentication on POST endpoints via ``X-API-Key``.
  Timing-safe comparison via ``hmac.compare_digest``.
- Optional per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware with an explicit origin allow-list.
- Request body size cap (``max_body_bytes``, default 1 MiB).

Usage:
    api = APIServer(pipeline, gateway, custody, api_config=cfg.api)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web
from stellar_sdk import StrKey

from lumenrelay_core.assets import NativeAsset, asset_from_fields
from lumenrelay_core.config import APIConfig
from lumenrelay_core.errors import RelayError, ValidationError
from lumenrelay_core.models import PaymentRequest

if TYPE_CHECKING:
    from lumenrelay_core.custody import KeyCustody
    from lumenrelay_core.gateway import LedgerGateway
    from lumenrelay_core.pipeline import SubmissionPipeline

logger = logging.getLogger("lumenrelay_api")


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


def _amount_text(value: Any) -> str:
    """Amounts arrive as JSON strings or numbers; keep them as text."""
    if value is None or isinstance(value, bool):
        return ""
    return str(value).strip()


def _account_id(raw: Any) -> str:
    account_id = str(raw or "").strip()
    if not account_id:
        raise ValidationError("Account ID is required", field="accountId")
    if not StrKey.is_valid_ed25519_public_key(account_id):
        raise ValidationError("Account ID is not a valid account id", field="accountId")
    return account_id


def _clamp_limit(raw: str | None, default: int, maximum: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        limit = int(raw)
    except ValueError:
        raise ValidationError("limit must be an integer", field="limit")
    return max(1, min(limit, maximum))


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter.

    A bucket idle for a full minute has refilled completely and is
    indistinguishable from a new one, so such buckets are dropped once
    ``max_tracked`` addresses are held.  The table never grows past that cap.
    """

    __slots__ = ("_buckets", "_rpm", "_max_tracked")

    IDLE_SECONDS = 60.0

    def __init__(self, rpm: int, max_tracked: int = 10_000):
        self._rpm = rpm  # 0 = unlimited
        self._max_tracked = max_tracked
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def __len__(self) -> int:
        return len(self._buckets)

    def _evict_idle(self, now: float) -> None:
        idle = [ip for ip, (_, last) in self._buckets.items() if now - last >= self.IDLE_SECONDS]
        for ip in idle:
            del self._buckets[ip]
        if len(self._buckets) >= self._max_tracked:
            # Every address is active: forget the least recently seen one.
            oldest = min(self._buckets, key=lambda k: self._buckets[k][1])
            del self._buckets[oldest]

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        now = time.monotonic()
        if ip not in self._buckets and len(self._buckets) >= self._max_tracked:
            self._evict_idle(now)
        bucket = self._buckets[ip]
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

@web.middleware
async def error_middleware(request: web.Request, handler):
    """Render every failure as a JSON ``{"error": ...}`` body."""
    try:
        return await handler(request)
    except RelayError as exc:
        return web.json_response(exc.to_dict(), status=exc.http_status)
    except web.HTTPException as exc:
        if exc.status < 400:
            raise
        headers = {}
        if "Retry-After" in exc.headers:
            headers["Retry-After"] = exc.headers["Retry-After"]
        return web.json_response(
            {"error": exc.reason if not exc.text else exc.text},
            status=exc.status,
            headers=headers,
        )
    except Exception:
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return web.json_response({"error": "Internal server error"}, status=500)


def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """aiohttp middleware that requires an API key on POST/PUT/DELETE.

    Only reads the key from the ``X-API-Key`` header (never from query
    params, which leak into logs and Referer headers).
    """

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """aiohttp middleware that adds CORS headers.

    The ``*`` wildcard is **not** supported: operators list concrete origins.
    """

    allowed = set(origins) if origins else set()
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


class APIServer:
    """Thin aiohttp wrapper around the submission pipeline and ledger reads."""

    def __init__(
        self,
        pipeline: SubmissionPipeline,
        gateway: LedgerGateway,
        custody: KeyCustody,
        *,
        api_config: APIConfig | None = None,
    ):
        self.pipeline = pipeline
        self.gateway = gateway
        self.custody = custody
        self.config = api_config or APIConfig()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        cfg = self.config
        middlewares: list = []
        if cfg.cors_origins:
            middlewares.append(_make_cors_middleware(cfg.cors_origins))
        middlewares.append(error_middleware)
        if cfg.rate_limit_rpm > 0:
            middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
        if cfg.api_key:
            middlewares.append(_make_api_key_middleware(cfg.api_key))

        app = web.Application(middlewares=middlewares, client_max_size=cfg.max_body_bytes)
        self._register_routes(app, cfg.prefix.rstrip("/"))
        return app

    async def start(self) -> None:
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info(f"API listening on http://{self.config.host}:{self.config.port}{self.config.prefix}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application, prefix: str) -> None:
        app.router.add_post(f"{prefix}/wallet/details", self._wallet_details)
        app.router.add_get(f"{prefix}/wallet/transactions/{{account_id}}", self._wallet_transactions)
        app.router.add_post(f"{prefix}/transaction/send", self._transaction_send)
        app.router.add_post(f"{prefix}/payment/send", self._payment_send)
        app.router.add_get(f"{prefix}/balance", self._balance)
        app.router.add_get(f"{prefix}/health", self._health)

    # ── handlers ─────────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "signingAccount": self.custody.public_key,
            "network": self.pipeline.assembler.network_passphrase,
        })

    async def _wallet_details(self, request: web.Request) -> web.Response:
        """
        POST /wallet/details
        Body: {"accountId": "G..."}
        """
        body = await _read_json(request)
        account_id = _account_id(body.get("accountId"))
        snapshot = await self.gateway.get_account(account_id)
        return web.json_response(snapshot.to_wallet_details(), dumps=_json_dumps)

    async def _wallet_transactions(self, request: web.Request) -> web.Response:
        """GET /wallet/transactions/{account_id}?limit=N, most recent first."""
        account_id = _account_id(request.match_info["account_id"])
        limit = _clamp_limit(
            request.query.get("limit"),
            self.config.history_default_limit,
            self.config.history_max_limit,
        )
        entries = await self.gateway.list_transactions(account_id, limit=limit, order="desc")
        return web.json_response([e.to_dict() for e in entries], dumps=_json_dumps)

    async def _transaction_send(self, request: web.Request) -> web.Response:
        """
        POST /transaction/send
        Body: {"destinationAccount": "G...", "amount": "10.5"}
        """
        body = await _read_json(request)
        destination, amount = self._payment_fields(body)
        result = await self.pipeline.submit(PaymentRequest(destination, amount, NativeAsset()))
        return web.json_response(result.to_dict())

    async def _payment_send(self, request: web.Request) -> web.Response:
        """
        POST /payment/send
        Body: {"destinationAccount": "G...", "amount": "5",
               "assetCode": "USD", "assetIssuer": "G..."}
        Native asset iff both assetCode and assetIssuer are absent.
        """
        body = await _read_json(request)
        destination, amount = self._payment_fields(body)
        asset = asset_from_fields(body.get("assetCode"), body.get("assetIssuer"))
        result = await self.pipeline.submit(PaymentRequest(destination, amount, asset))
        return web.json_response(result.to_dict())

    async def _balance(self, _request: web.Request) -> web.Response:
        snapshot = await self.gateway.get_account(self.custody.public_key)
        return web.json_response({
            "accountId": self.custody.public_key,
            "balances": [b.to_dict() for b in snapshot.balances],
        })

    @staticmethod
    def _payment_fields(body: dict[str, Any]) -> tuple[str, str]:
        destination = str(body.get("destinationAccount") or "").strip()
        amount = _amount_text(body.get("amount"))
        if not destination or not amount:
            raise ValidationError("Missing required parameters")
        return destination, amount


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles non-standard types."""
    return json.dumps(obj, default=str)
