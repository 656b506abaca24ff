"""
Tests for the REST API layer (vefarm_core.api).

Covers:
  - Query endpoints (health, status, pools, users, locks)
  - Pool administration, farm pool and lock pool endpoints
  - Admin configuration endpoints
  - Error mapping (400 / 404 / 409 / 500) and JSON error bodies
  - Input validation (malformed JSON, non-integer amounts)
  - API key authentication, rate limiting, CORS, body size cap
"""

from __future__ import annotations

import pytest
from aiohttp.test_utils import TestClient, TestServer

from vefarm_core.api import APIServer, _safe_int, _TokenBucket
from vefarm_core.config import APIConfig
from vefarm_core.params import WEEK
from vefarm_core.precision import SCALE, UNITS_PER_TOKEN

ONE = UNITS_PER_TOKEN


# ─── Helpers ────────────────────────────────────────────────────────

def _build_api_config(**overrides) -> APIConfig:
    defaults = {
        "enabled": True,
        "host": "127.0.0.1",
        "port": 0,
        "api_key": "",
        "rate_limit_rpm": 0,
        "cors_origins": [],
        "max_body_bytes": 65_536,
    }
    defaults.update(overrides)
    return APIConfig(**defaults)


async def _make_test_client(farm, api_config=None):
    """Create an aiohttp TestClient from an APIServer."""
    api = APIServer(farm, host="127.0.0.1", port=0, api_config=api_config)
    return TestClient(TestServer(api.build_app()))


# ═══════════════════════════════════════════════════════════════════
#  Token Bucket Rate Limiter
# ═══════════════════════════════════════════════════════════════════

class TestTokenBucket:
    def test_unlimited_always_allows(self):
        bucket = _TokenBucket(0)
        for _ in range(1000):
            assert bucket.allow("1.2.3.4")

    def test_allows_up_to_limit(self):
        bucket = _TokenBucket(5)
        for _ in range(5):
            assert bucket.allow("1.2.3.4")
        assert not bucket.allow("1.2.3.4")

    def test_different_ips_independent(self):
        bucket = _TokenBucket(2)
        assert bucket.allow("1.1.1.1")
        assert bucket.allow("1.1.1.1")
        assert not bucket.allow("1.1.1.1")
        assert bucket.allow("2.2.2.2")

    def test_tokens_refill_over_time(self):
        bucket = _TokenBucket(60)  # 1 per second
        for _ in range(60):
            bucket.allow("x")
        assert not bucket.allow("x")
        bucket._buckets["x"][1] -= 2.0  # pretend 2 secs passed
        assert bucket.allow("x")
        assert bucket.allow("x")

    def test_tokens_capped_at_rpm(self):
        bucket = _TokenBucket(10)
        bucket._buckets["ip"][1] -= 10000
        for _ in range(10):
            assert bucket.allow("ip")
        assert not bucket.allow("ip")


class TestSafeInt:
    def test_accepts_int_and_digit_string(self):
        assert _safe_int(5) == 5
        assert _safe_int("1000000000000000000000") == 10 ** 21
        assert _safe_int("-3") == -3

    @pytest.mark.parametrize("bad", [1.5, True, "abc", None, [1], " 5 ", "1_000", "+5", "0x10", "9" * 101])
    def test_rejects_non_integers(self, bad):
        from aiohttp import web
        with pytest.raises(web.HTTPBadRequest):
            _safe_int(bad, "amount")


# ═══════════════════════════════════════════════════════════════════
#  Query endpoints
# ═══════════════════════════════════════════════════════════════════

class TestQueries:
    @pytest.mark.asyncio
    async def test_health(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
            assert data["ok"] is True
            assert data["pools"] == 2
            assert data["total_locked_amount"] == 0
            assert data["reward_mintable"] == lp_farm.reward.mintable()

    @pytest.mark.asyncio
    async def test_status(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.get("/status")
            data = await resp.json()
            assert data["pool_count"] == 2
            assert data["total_weight"] == 400
            assert data["params"]["steepness"] == 3 * SCALE

    @pytest.mark.asyncio
    async def test_pools(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.get("/pools")
            data = await resp.json()
            assert [p["pid"] for p in data["pools"]] == [0, 1]
            assert data["pools"][1]["stake_unit"] == "LP"

    @pytest.mark.asyncio
    async def test_pool_info(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.get("/pools/1")
            assert resp.status == 200
            data = await resp.json()
            assert data["weight"] == 300
            assert data["backing_supply"] == 0

    @pytest.mark.asyncio
    async def test_unknown_pool_is_404(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.get("/pools/9")
            assert resp.status == 404
            data = await resp.json()
            assert data["error"] == "InvalidPool"

    @pytest.mark.asyncio
    async def test_non_integer_pid_is_400(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.get("/pools/abc")
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_user_info(self, lp_farm, clock):
        lp_farm.deposit(1, "alice", 5 * ONE)
        clock.advance(4)
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.get("/pools/1/users/alice")
            data = await resp.json()
            assert data["pid"] == 1
            assert data["user"] == "alice"
            assert data["amount"] == 5 * ONE
            assert data["pending_reward"] == 3 * ONE

    @pytest.mark.asyncio
    async def test_lock_info(self, farm, clock):
        farm.enter_staking("alice", 10 * ONE, WEEK)
        client = await _make_test_client(farm)
        async with client:
            resp = await client.get("/locks/alice")
            data = await resp.json()
            assert data["user"] == "alice"
            assert data["state"] == "active"
            assert data["unlock_time"] == clock.now + WEEK
            assert data["locked_amount"] == 10 * ONE


# ═══════════════════════════════════════════════════════════════════
#  Pool administration
# ═══════════════════════════════════════════════════════════════════

class TestPoolAdministration:
    @pytest.mark.asyncio
    async def test_add_pool(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post("/pools", json={"symbol": "LP2", "weight": 100})
            assert resp.status == 201
            data = await resp.json()
            assert data["status"] == "created"
            assert data["pid"] == 2
        assert lp_farm.pool_count() == 3
        assert "LP2" in lp_farm.stake_tokens

    @pytest.mark.asyncio
    async def test_duplicate_pool(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post("/pools", json={"symbol": "LP", "weight": 100})
            assert resp.status == 400
            data = await resp.json()
            assert data["error"] == "DuplicatePool"

    @pytest.mark.asyncio
    async def test_missing_symbol(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post("/pools", json={"weight": 100})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_set_pool_weight(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post(
                "/pools/1/weight", json={"weight": 600, "settle_first": True},
            )
            assert resp.status == 200
            data = await resp.json()
            assert data["weight"] == 600
            assert data["total_weight"] == lp_farm.registry.total_weight

    @pytest.mark.asyncio
    async def test_set_pool_zero_weight_rejected(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post("/pools/0/weight", json={"weight": 10})
            assert resp.status == 400
            data = await resp.json()
            assert data["error"] == "InvalidPool"


# ═══════════════════════════════════════════════════════════════════
#  Farm pool endpoints
# ═══════════════════════════════════════════════════════════════════

class TestFarmPools:
    @pytest.mark.asyncio
    async def test_deposit_and_withdraw(self, lp_farm, lp, clock):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post(
                "/deposit", json={"pid": 1, "user": "alice", "amount": str(10 * ONE)},
            )
            assert resp.status == 200
            data = await resp.json()
            assert data["status"] == "deposited"
            assert data["amount"] == 10 * ONE
            assert data["reward_paid"] == 0
            assert lp.balance_of("vefarm") == 10 * ONE

            clock.advance(4)
            resp = await client.post(
                "/withdraw", json={"pid": 1, "user": "alice", "amount": 10 * ONE},
            )
            data = await resp.json()
            assert data["status"] == "withdrawn"
            assert data["reward_paid"] == 3 * ONE
        assert lp.balance_of("alice") == 1_000 * ONE

    @pytest.mark.asyncio
    async def test_withdraw_too_much(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post(
                "/withdraw", json={"pid": 1, "user": "alice", "amount": 1},
            )
            assert resp.status == 400
            data = await resp.json()
            assert data["error"] == "InsufficientBalance"

    @pytest.mark.asyncio
    async def test_emergency_withdraw(self, lp_farm):
        lp_farm.deposit(1, "alice", 7 * ONE)
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post("/emergency_withdraw", json={"pid": 1, "user": "alice"})
            data = await resp.json()
            assert data["amount"] == 7 * ONE

    @pytest.mark.asyncio
    async def test_float_amount_rejected(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post(
                "/deposit", json={"pid": 1, "user": "alice", "amount": 1.5},
            )
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_missing_user(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post("/deposit", json={"pid": 1, "amount": 1})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_non_json_body(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post(
                "/deposit", data=b"not json", headers={"Content-Type": "application/json"},
            )
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_json_array_body(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post("/deposit", json=[1, 2, 3])
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_reentrant_call_is_409(self, lp_farm, lp):
        lp.on_receive("vefarm", lambda *_: lp_farm.deposit(1, "bob", ONE))
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post(
                "/deposit", json={"pid": 1, "user": "alice", "amount": ONE},
            )
            assert resp.status == 409
            data = await resp.json()
            assert data["error"] == "ReentrantCall"
        assert lp.balance_of("alice") == 1_000 * ONE


# ═══════════════════════════════════════════════════════════════════
#  Lock pool endpoints
# ═══════════════════════════════════════════════════════════════════

class TestLockPool:
    @pytest.mark.asyncio
    async def test_enter_claim_release(self, farm, reward, clock):
        client = await _make_test_client(farm)
        async with client:
            resp = await client.post(
                "/lock/enter",
                json={"user": "alice", "amount": str(100 * ONE), "duration": WEEK},
            )
            assert resp.status == 200
            data = await resp.json()
            assert data["status"] == "locked"
            assert data["unlock_time"] == clock.now + WEEK

            clock.advance(1)
            resp = await client.post("/lock/leave", json={"user": "alice"})
            data = await resp.json()
            assert data["status"] == "claimed"
            assert data["released"] == 0

            clock.advance(WEEK)
            resp = await client.post("/lock/leave", json={"user": "alice"})
            data = await resp.json()
            assert data["status"] == "released"
            assert data["released"] == 100 * ONE
        assert farm.lock_engine.total_locked_amount == 0

    @pytest.mark.asyncio
    async def test_extend(self, farm, clock):
        farm.enter_staking("alice", ONE, WEEK)
        client = await _make_test_client(farm)
        async with client:
            resp = await client.post(
                "/lock/extend", json={"user": "alice", "extra_duration": 2 * WEEK},
            )
            data = await resp.json()
            assert data["status"] == "extended"
            assert data["unlock_time"] == clock.now + 2 * WEEK

    @pytest.mark.asyncio
    async def test_bad_duration(self, farm):
        client = await _make_test_client(farm)
        async with client:
            resp = await client.post(
                "/lock/enter", json={"user": "alice", "amount": ONE, "duration": 1},
            )
            assert resp.status == 400
            data = await resp.json()
            assert data["error"] == "InvalidLockDuration"

    @pytest.mark.asyncio
    async def test_leave_without_lock(self, farm):
        client = await _make_test_client(farm)
        async with client:
            resp = await client.post("/lock/leave", json={"user": "carol"})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_invariant_violation_is_500(self, farm, reward, clock):
        farm.enter_staking("alice", 10 * ONE, 30 * WEEK)
        clock.advance(60)

        def corrupt(symbol, sender, amount):
            farm.lock_engine.total_locked_amount += 1

        reward.on_receive("alice", corrupt)
        client = await _make_test_client(farm)
        async with client:
            resp = await client.post("/lock/leave", json={"user": "alice"})
            assert resp.status == 500
            data = await resp.json()
            assert data["error"] == "InvariantViolation"
        assert farm.lock_engine.total_locked_amount == 10 * ONE


# ═══════════════════════════════════════════════════════════════════
#  Admin endpoints
# ═══════════════════════════════════════════════════════════════════

class TestAdmin:
    @pytest.mark.asyncio
    async def test_settle_all_and_one(self, lp_farm, clock):
        lp_farm.deposit(1, "alice", ONE)
        clock.advance(4)
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post("/admin/settle", json={})
            data = await resp.json()
            assert data["status"] == "settled"
            assert data["minted"] == 3 * ONE

            clock.advance(4)
            resp = await client.post("/admin/settle", json={"pid": 1})
            data = await resp.json()
            assert data["pid"] == 1
            assert data["minted"] == 3 * ONE

    @pytest.mark.asyncio
    async def test_emission_rate(self, farm):
        client = await _make_test_client(farm)
        async with client:
            resp = await client.post("/admin/emission_rate", json={"rate": 5})
            assert resp.status == 200
            assert farm.params.emission_rate == 5
            resp = await client.post("/admin/emission_rate", json={"rate": -1})
            assert resp.status == 400
            data = await resp.json()
            assert data["error"] == "ParameterOutOfRange"

    @pytest.mark.asyncio
    async def test_staking_percent(self, lp_farm):
        client = await _make_test_client(lp_farm)
        async with client:
            resp = await client.post("/admin/staking_percent", json={"percent": 10})
            data = await resp.json()
            assert data["staking_weight_percent"] == 10
            assert data["staking_pool_weight"] == 300 * 10 // 90

    @pytest.mark.asyncio
    async def test_steepness(self, farm):
        client = await _make_test_client(farm)
        async with client:
            resp = await client.post("/admin/steepness", json={"steepness": "4.5"})
            data = await resp.json()
            assert data["steepness"] == 4 * SCALE + SCALE // 2
            assert farm.params.steepness == 4 * SCALE + SCALE // 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", ["abc", True, "9", "0.1"])
    async def test_steepness_rejected(self, farm, bad):
        client = await _make_test_client(farm)
        async with client:
            resp = await client.post("/admin/steepness", json={"steepness": bad})
            assert resp.status == 400
        assert farm.params.steepness == 3 * SCALE

    @pytest.mark.asyncio
    async def test_reward_cap(self, farm, reward):
        new_cap = reward.total_supply() + ONE
        client = await _make_test_client(farm)
        async with client:
            resp = await client.post("/admin/reward_cap", json={"max_supply": str(new_cap)})
            data = await resp.json()
            assert data["max_supply"] == new_cap
            resp = await client.post(
                "/admin/reward_cap", json={"max_supply": str(new_cap + 1)},
            )
            assert resp.status == 400


# ═══════════════════════════════════════════════════════════════════
#  Security middleware
# ═══════════════════════════════════════════════════════════════════

class TestAPIKeyAuth:
    @pytest.mark.asyncio
    async def test_get_allowed_without_key(self, farm):
        client = await _make_test_client(farm, _build_api_config(api_key="secret123"))
        async with client:
            resp = await client.get("/health")
            assert resp.status == 200

    @pytest.mark.asyncio
    async def test_post_rejected_without_key(self, farm):
        client = await _make_test_client(farm, _build_api_config(api_key="secret123"))
        async with client:
            resp = await client.post("/admin/emission_rate", json={"rate": 5})
            assert resp.status == 401
        assert farm.params.emission_rate == ONE

    @pytest.mark.asyncio
    async def test_post_rejected_with_wrong_key(self, farm):
        client = await _make_test_client(farm, _build_api_config(api_key="secret123"))
        async with client:
            resp = await client.post(
                "/admin/emission_rate", json={"rate": 5}, headers={"X-API-Key": "wrong"},
            )
            assert resp.status == 401

    @pytest.mark.asyncio
    async def test_query_param_key_ignored(self, farm):
        client = await _make_test_client(farm, _build_api_config(api_key="secret123"))
        async with client:
            resp = await client.post(
                "/admin/emission_rate?api_key=secret123", json={"rate": 5},
            )
            assert resp.status == 401

    @pytest.mark.asyncio
    async def test_post_allowed_with_header_key(self, farm):
        client = await _make_test_client(farm, _build_api_config(api_key="secret123"))
        async with client:
            resp = await client.post(
                "/admin/emission_rate",
                json={"rate": 5},
                headers={"X-API-Key": "secret123"},
            )
            assert resp.status == 200


class TestCORS:
    @pytest.mark.asyncio
    async def test_allowed_origin_gets_headers(self, farm):
        cfg = _build_api_config(cors_origins=["http://app.test"])
        client = await _make_test_client(farm, cfg)
        async with client:
            resp = await client.get("/health", headers={"Origin": "http://app.test"})
            assert resp.headers["Access-Control-Allow-Origin"] == "http://app.test"

    @pytest.mark.asyncio
    async def test_disallowed_origin_no_headers(self, farm):
        cfg = _build_api_config(cors_origins=["http://app.test"])
        client = await _make_test_client(farm, cfg)
        async with client:
            resp = await client.get("/health", headers={"Origin": "http://evil.test"})
            assert "Access-Control-Allow-Origin" not in resp.headers

    @pytest.mark.asyncio
    async def test_wildcard_discarded(self, farm):
        cfg = _build_api_config(cors_origins=["*"])
        client = await _make_test_client(farm, cfg)
        async with client:
            resp = await client.get("/health", headers={"Origin": "http://any.test"})
            assert "Access-Control-Allow-Origin" not in resp.headers

    @pytest.mark.asyncio
    async def test_preflight_returns_204(self, farm):
        cfg = _build_api_config(cors_origins=["http://app.test"])
        client = await _make_test_client(farm, cfg)
        async with client:
            resp = await client.options("/deposit", headers={"Origin": "http://app.test"})
            assert resp.status == 204
            assert "X-API-Key" in resp.headers["Access-Control-Allow-Headers"]


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_rate_limit_returns_429(self, farm):
        client = await _make_test_client(farm, _build_api_config(rate_limit_rpm=3))
        async with client:
            for _ in range(3):
                resp = await client.get("/health")
                assert resp.status == 200
            resp = await client.get("/health")
            assert resp.status == 429
            assert "Retry-After" in resp.headers


class TestBodySize:
    @pytest.mark.asyncio
    async def test_oversized_body_rejected(self, farm):
        client = await _make_test_client(farm, _build_api_config(max_body_bytes=64))
        async with client:
            resp = await client.post(
                "/lock/enter", json={"user": "a" * 200, "amount": 1, "duration": WEEK},
            )
            assert resp.status == 413
        assert farm.lock_engine.locks == {}
