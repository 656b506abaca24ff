"""
REST / HTTP API server for a VeFarm engine.

Built on ``aiohttp``; the engine is synchronous and every handler runs a
single farm call to completion on the event loop, so requests never
interleave inside a transaction.

Endpoints
---------
GET  /health                      Liveness and engine summary
GET  /status                      Parameters and aggregate totals
GET  /pools                       Every pool
GET  /pools/{pid}                 One pool
GET  /pools/{pid}/users/{user}    A user's stake and pending reward
GET  /locks/{user}                A user's lock, vote power and rewards
POST /pools                       Register a farm pool for a stake unit
POST /pools/{pid}/weight          Change a farm pool's weight
POST /deposit                     Deposit stake units into a farm pool
POST /withdraw                    Withdraw stake units
POST /emergency_withdraw          Return principal, forfeit rewards
POST /lock/enter                  Lock reward tokens in pool 0
POST /lock/leave                  Claim, or release an expired lock
POST /lock/extend                 Push a lock's unlock time out
POST /admin/settle                Settle one pool (``pid``) or all pools
POST /admin/emission_rate         Set reward units emitted per second
POST /admin/staking_percent       Set pool 0's share of total weight
POST /admin/steepness             Set the decay-curve steepness
POST /admin/reward_cap            Lower the reward token's supply cap

Amounts travel as JSON integers or decimal-integer strings in base
units.  ``steepness`` is a human decimal (``"3.5"``).

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header only.
  Timing-safe comparison via ``hmac.compare_digest``.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (origins configurable via ``cors_origins``).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(farm, host="127.0.0.1", port=8080, api_config=cfg.api)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import json
import logging
import re
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from vefarm_core.errors import FarmError, InvalidPool, InvariantViolation, ReentrantCall
from vefarm_core.precision import to_fixed
from vefarm_core.tokens import TokenLedger

if TYPE_CHECKING:
    from vefarm_core.config import APIConfig
    from vefarm_core.farm import Farm

logger = logging.getLogger("vefarm_api")

_INT_RE = re.compile(r"-?[0-9]{1,100}")


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int, accepting ints and decimal-integer strings only."""
    if isinstance(value, bool) or isinstance(value, float):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INT_RE.fullmatch(value):
        return int(value)
    raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _require(body: dict, name: str) -> Any:
    if name not in body or body[name] is None:
        raise web.HTTPBadRequest(text=f"{name} is required")
    return body[name]


def _require_str(body: dict, name: str) -> str:
    value = _require(body, name)
    if not isinstance(value, str) or not value:
        raise web.HTTPBadRequest(text=f"{name} must be a non-empty string")
    return value


async def _read_json(request: web.Request) -> dict:
    try:
        body = await request.json()
    except web.HTTPException:
        raise
    except Exception as exc:
        raise web.HTTPBadRequest(text="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return body


def _error_status(exc: FarmError, method: str) -> int:
    if isinstance(exc, InvariantViolation):
        return 500
    if isinstance(exc, ReentrantCall):
        return 409
    if isinstance(exc, InvalidPool) and method == "GET":
        return 404
    return 400


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
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

    The key is read from the ``X-API-Key`` header only, never from query
    parameters.
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
    """aiohttp middleware that adds CORS headers for listed origins.

    The ``*`` wildcard is discarded; only concrete origins are honoured.
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


def _make_error_middleware():
    """Translate ``FarmError`` into a JSON error body with a mapped status."""

    @web.middleware
    async def error_middleware(request: web.Request, handler):
        try:
            return await handler(request)
        except FarmError as exc:
            status = _error_status(exc, request.method)
            if status >= 500:
                logger.error(f"{request.method} {request.path} failed: {exc}")
            else:
                logger.info(f"{request.method} {request.path} rejected: {exc.code}")
            return web.json_response(exc.to_dict(), status=status)

    return error_middleware


class APIServer:
    """Thin aiohttp wrapper around a ``Farm``."""

    def __init__(
        self,
        farm: Farm,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.farm = farm
        self.host = host
        self.port = port
        self._api_config = api_config
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self.started_at = time.time()

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes

            if cfg.rate_limit_rpm > 0:
                self._rate_limiter = _TokenBucket(cfg.rate_limit_rpm)
                middlewares.append(_make_rate_limit_middleware(self._rate_limiter))

            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))

            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))

        middlewares.append(_make_error_middleware())
        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/status", self._status)
        # Pools
        app.router.add_get("/pools", self._pools)
        app.router.add_get("/pools/{pid}", self._pool_info)
        app.router.add_get("/pools/{pid}/users/{user}", self._user_info)
        app.router.add_post("/pools", self._add_pool)
        app.router.add_post("/pools/{pid}/weight", self._set_pool_weight)
        # Farm pools
        app.router.add_post("/deposit", self._deposit)
        app.router.add_post("/withdraw", self._withdraw)
        app.router.add_post("/emergency_withdraw", self._emergency_withdraw)
        # Lock pool
        app.router.add_get("/locks/{user}", self._lock_info)
        app.router.add_post("/lock/enter", self._enter_staking)
        app.router.add_post("/lock/leave", self._leave_staking)
        app.router.add_post("/lock/extend", self._extend_lock_time)
        # Administration
        app.router.add_post("/admin/settle", self._admin_settle)
        app.router.add_post("/admin/emission_rate", self._admin_emission_rate)
        app.router.add_post("/admin/staking_percent", self._admin_staking_percent)
        app.router.add_post("/admin/steepness", self._admin_steepness)
        app.router.add_post("/admin/reward_cap", self._admin_reward_cap)

    # ── query handlers ───────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        farm = self.farm
        return web.json_response({
            "ok": True,
            "pools": farm.pool_count(),
            "total_locked_amount": farm.lock_engine.total_locked_amount,
            "reward_mintable": farm.reward.mintable(),
            "uptime": int(time.time() - self.started_at),
        }, dumps=_json_dumps)

    async def _status(self, _request: web.Request) -> web.Response:
        return web.json_response(self.farm.get_summary(), dumps=_json_dumps)

    async def _pools(self, _request: web.Request) -> web.Response:
        pools = [self.farm.pool_info(pool.pid) for pool in self.farm.registry]
        return web.json_response({"pools": pools}, dumps=_json_dumps)

    async def _pool_info(self, request: web.Request) -> web.Response:
        pid = _safe_int(request.match_info["pid"], "pid")
        return web.json_response(self.farm.pool_info(pid), dumps=_json_dumps)

    async def _user_info(self, request: web.Request) -> web.Response:
        pid = _safe_int(request.match_info["pid"], "pid")
        user = request.match_info["user"]
        info = self.farm.user_info(pid, user)
        info.update(pid=pid, user=user)
        return web.json_response(info, dumps=_json_dumps)

    async def _lock_info(self, request: web.Request) -> web.Response:
        user = request.match_info["user"]
        info = self.farm.lock_info(user)
        info["user"] = user
        return web.json_response(info, dumps=_json_dumps)

    # ── pool administration ──────────────────────────────────────

    async def _add_pool(self, request: web.Request) -> web.Response:
        """
        POST /pools
        Body: {"symbol": "LP-A", "weight": 100, "settle_first": false}

        The stake unit is looked up among the ledgers the farm already
        knows and created empty otherwise.
        """
        body = await _read_json(request)
        symbol = _require_str(body, "symbol")
        weight = _safe_int(_require(body, "weight"), "weight")
        settle_first = bool(body.get("settle_first", False))

        token = self.farm.stake_tokens.get(symbol) or TokenLedger(symbol)
        pool = self.farm.add_pool(weight, token, settle_first=settle_first)
        return web.json_response(
            {"status": "created", **pool.to_dict()}, status=201, dumps=_json_dumps,
        )

    async def _set_pool_weight(self, request: web.Request) -> web.Response:
        pid = _safe_int(request.match_info["pid"], "pid")
        body = await _read_json(request)
        weight = _safe_int(_require(body, "weight"), "weight")
        settle_first = bool(body.get("settle_first", False))
        pool = self.farm.set_pool_weight(pid, weight, settle_first=settle_first)
        return web.json_response(
            {"status": "updated", **pool.to_dict(),
             "total_weight": self.farm.registry.total_weight},
            dumps=_json_dumps,
        )

    # ── farm pool handlers ───────────────────────────────────────

    async def _deposit(self, request: web.Request) -> web.Response:
        """
        POST /deposit
        Body: {"pid": 1, "user": "alice", "amount": "1000000000000000000"}
        """
        body = await _read_json(request)
        pid = _safe_int(_require(body, "pid"), "pid")
        user = _require_str(body, "user")
        amount = _safe_int(_require(body, "amount"), "amount")
        paid = self.farm.deposit(pid, user, amount)
        return web.json_response({
            "status": "deposited",
            "pid": pid,
            "user": user,
            "amount": amount,
            "reward_paid": paid,
        }, dumps=_json_dumps)

    async def _withdraw(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        pid = _safe_int(_require(body, "pid"), "pid")
        user = _require_str(body, "user")
        amount = _safe_int(_require(body, "amount"), "amount")
        paid = self.farm.withdraw(pid, user, amount)
        return web.json_response({
            "status": "withdrawn",
            "pid": pid,
            "user": user,
            "amount": amount,
            "reward_paid": paid,
        }, dumps=_json_dumps)

    async def _emergency_withdraw(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        pid = _safe_int(_require(body, "pid"), "pid")
        user = _require_str(body, "user")
        returned = self.farm.emergency_withdraw(pid, user)
        return web.json_response({
            "status": "withdrawn",
            "pid": pid,
            "user": user,
            "amount": returned,
        }, dumps=_json_dumps)

    # ── lock pool handlers ───────────────────────────────────────

    async def _enter_staking(self, request: web.Request) -> web.Response:
        """
        POST /lock/enter
        Body: {"user": "alice", "amount": "1000", "duration": 2592000}

        ``amount`` may be 0 to top up the duration of an existing lock.
        """
        body = await _read_json(request)
        user = _require_str(body, "user")
        amount = _safe_int(_require(body, "amount"), "amount")
        duration = _safe_int(_require(body, "duration"), "duration")
        result = self.farm.enter_staking(user, amount, duration)
        return web.json_response(
            {"status": "locked", "user": user, **result.to_dict()}, dumps=_json_dumps,
        )

    async def _leave_staking(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        user = _require_str(body, "user")
        result = self.farm.leave_staking(user)
        status = "released" if result.released else "claimed"
        return web.json_response(
            {"status": status, "user": user, **result.to_dict()}, dumps=_json_dumps,
        )

    async def _extend_lock_time(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        user = _require_str(body, "user")
        extra = _safe_int(_require(body, "extra_duration"), "extra_duration")
        result = self.farm.extend_lock_time(user, extra)
        return web.json_response(
            {"status": "extended", "user": user, **result.to_dict()}, dumps=_json_dumps,
        )

    # ── admin handlers ───────────────────────────────────────────

    async def _admin_settle(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        if body.get("pid") is None:
            minted = self.farm.mass_settle()
            return web.json_response({"status": "settled", "minted": minted}, dumps=_json_dumps)
        pid = _safe_int(body["pid"], "pid")
        minted = self.farm.settle(pid)
        return web.json_response(
            {"status": "settled", "pid": pid, "minted": minted}, dumps=_json_dumps,
        )

    async def _admin_emission_rate(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        rate = _safe_int(_require(body, "rate"), "rate")
        self.farm.set_emission_rate(rate)
        return web.json_response(
            {"status": "updated", "emission_rate": rate}, dumps=_json_dumps,
        )

    async def _admin_staking_percent(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        pct = _safe_int(_require(body, "percent"), "percent")
        self.farm.set_staking_weight_percent(pct)
        return web.json_response({
            "status": "updated",
            "staking_weight_percent": pct,
            "staking_pool_weight": self.farm.registry.pools[0].weight,
        }, dumps=_json_dumps)

    async def _admin_steepness(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        raw = _require(body, "steepness")
        if isinstance(raw, bool):
            raise web.HTTPBadRequest(text="steepness must be a decimal number")
        try:
            k = to_fixed(raw)
        except ValueError as exc:
            raise web.HTTPBadRequest(text="steepness must be a decimal number") from exc
        self.farm.set_steepness(k)
        return web.json_response({"status": "updated", "steepness": k}, dumps=_json_dumps)

    async def _admin_reward_cap(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        cap = _safe_int(_require(body, "max_supply"), "max_supply")
        self.farm.decrease_reward_asset_cap(cap)
        return web.json_response(
            {"status": "updated", "max_supply": self.farm.reward.max_supply()},
            dumps=_json_dumps,
        )


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles non-standard types."""
    return json.dumps(obj, default=str)
