"""Tests for chain adapters and their RPC plumbing."""

from decimal import Decimal

import pytest

from sniper.chains import (
    INBOUND,
    JsonRpcClient,
    SimulatedAdapter,
    SolanaAdapter,
    balance_delta_transaction,
    build_adapters,
    parse_core_transactions,
    with_retry,
)
from sniper.config import settings_from_mapping
from sniper.errors import ConfigError, RpcFatal, RpcTransient

from .conftest import FakeChain, base_config

WATCHED = "So11111111111111111111111111111111111111112"
OTHER = "11111111111111111111111111111111"


def _sol_tx(pre, post, *, err=None, keys=(OTHER, WATCHED), block_time=1_700_000_000):
    return {
        "blockTime": block_time,
        "meta": {"err": err, "preBalances": pre, "postBalances": post},
        "transaction": {"message": {"accountKeys": list(keys)}},
    }


class TestJsonRpcResponses:
    """parse_response sorts failures into retryable and fatal."""

    @pytest.fixture
    def client(self):
        return JsonRpcClient("http://localhost:9332", transient_codes={-28})

    def test_result_keeps_decimal_precision(self, client):
        result = client.parse_response("getbalance", 200, '{"result": 0.10000001, "error": null, "id": 1}')
        assert result == Decimal("0.10000001")

    def test_rpc_error_is_fatal(self, client):
        with pytest.raises(RpcFatal):
            client.parse_response("sendtoaddress", 500, '{"result": null, "error": {"code": -6, "message": "Insufficient funds"}}')

    def test_transient_error_code(self, client):
        with pytest.raises(RpcTransient):
            client.parse_response("getbalance", 500, '{"error": {"code": -28, "message": "Loading wallet"}}')

    def test_rate_limit_and_server_errors(self, client):
        with pytest.raises(RpcTransient):
            client.parse_response("getbalance", 429, "")
        with pytest.raises(RpcTransient):
            client.parse_response("getbalance", 503, "<html>bad gateway</html>")

    def test_unexpected_body(self, client):
        with pytest.raises(RpcFatal):
            client.parse_response("getbalance", 401, "")


class TestWithRetry:
    async def test_retries_transient_then_succeeds(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise RpcTransient("timeout")
            return "ok"

        assert await with_retry(flaky, retries=3, base_delay=0) == "ok"
        assert len(attempts) == 3

    async def test_gives_up_as_fatal(self):
        async def down():
            raise RpcTransient("timeout")

        with pytest.raises(RpcFatal):
            await with_retry(down, retries=2, base_delay=0)

    async def test_fatal_is_not_retried(self):
        attempts = []

        async def broken():
            attempts.append(1)
            raise RpcFatal("bad request")

        with pytest.raises(RpcFatal):
            await with_retry(broken, retries=3, base_delay=0)
        assert len(attempts) == 1


class TestCoreTransactions:
    def test_keeps_receives_newest_first(self):
        rows = [
            {"category": "send", "amount": -1, "txid": "a", "time": 10, "confirmations": 3},
            {"category": "receive", "amount": 21, "txid": "b", "time": 20, "confirmations": 1},
            {"category": "receive", "amount": 5, "txid": "c", "time": 30, "confirmations": 0},
            {"category": "receive", "amount": 5, "time": 40},
        ]
        txs = parse_core_transactions(rows)
        assert [t.tx_id for t in txs] == ["c", "b"]
        assert txs[1].amount == Decimal("21")
        assert txs[0].confirmations == 0
        assert all(t.direction == INBOUND for t in txs)


class TestSolanaBalanceDelta:
    """Incoming SOL is the watched key's post minus pre balance."""

    def test_incoming_transfer(self):
        tx = balance_delta_transaction("sig1", _sol_tx([5_000_000_000, 0], [2_999_995_000, 2_000_000_000]), WATCHED)
        assert tx.amount == Decimal("2")
        assert tx.tx_id == "sig1"
        assert tx.timestamp == 1_700_000_000

    def test_outgoing_transfer_ignored(self):
        assert balance_delta_transaction("sig", _sol_tx([0, 2_000_000_000], [1_000_000_000, 999_995_000]), WATCHED) is None

    def test_failed_transaction_ignored(self):
        tx = _sol_tx([0, 0], [0, 1_000_000_000], err={"InstructionError": [0, "Custom"]})
        assert balance_delta_transaction("sig", tx, WATCHED) is None

    def test_unrelated_transaction_ignored(self):
        assert balance_delta_transaction("sig", _sol_tx([0, 0], [0, 1], keys=(OTHER, OTHER)), WATCHED) is None

    def test_parsed_account_keys(self):
        keys = [{"pubkey": OTHER}, {"pubkey": WATCHED}]
        tx = balance_delta_transaction("sig", _sol_tx([10, 0], [5, 500_000_000], keys=keys), WATCHED)
        assert tx.amount == Decimal("0.5")

    async def test_adapter_lists_incoming(self, monkeypatch):
        adapter = SolanaAdapter("http://sol.invalid", payout_address=WATCHED, retries=0)
        responses = {
            "getSignaturesForAddress": [
                {"signature": "s-in", "err": None, "confirmationStatus": "finalized", "blockTime": 100},
                {"signature": "s-failed", "err": {"x": 1}, "confirmationStatus": "finalized"},
                {"signature": "s-out", "err": None, "confirmationStatus": "confirmed", "blockTime": 90},
            ],
        }
        details = {
            "s-in": _sol_tx([0, 0], [0, 3_000_000_000]),
            "s-out": _sol_tx([0, 3_000_000_000], [0, 1_000_000_000]),
        }

        async def fake_call(method, params=None):
            if method == "getTransaction":
                return details[params[0]]
            return responses[method]

        monkeypatch.setattr(adapter.rpc, "call", fake_call)
        txs = await adapter.get_recent_transactions(10)
        assert [t.tx_id for t in txs] == ["s-in"]
        assert txs[0].amount == Decimal("3")
        assert txs[0].confirmations == 32
        assert txs[0].timestamp == 100
        assert adapter.own_addresses() == {WATCHED}

    async def test_send_requires_signer(self):
        adapter = SolanaAdapter("http://sol.invalid", payout_address=WATCHED)
        with pytest.raises(RpcFatal):
            await adapter.send_payment(OTHER, Decimal("1"))


class TestSimulation:
    async def test_simulated_send_never_touches_inner(self):
        inner = FakeChain("3")
        sim = SimulatedAdapter("LTC", inner)
        result = await sim.send_payment("Laddr", Decimal("1"))
        assert result.tx_id.startswith("simulated_tx_")
        assert inner.send_calls == []
        assert await sim.get_balance() == Decimal("3")
        assert sim.own_addresses() == inner.own_addresses()

    def test_build_adapters_in_simulation(self, tmp_path):
        settings = settings_from_mapping(base_config(tmp_path, simulation_mode=True), env={})
        adapters = build_adapters(settings)
        assert isinstance(adapters["LTC"], SimulatedAdapter)
        assert adapters["LTC"].inner is None

    def test_build_adapters_requires_endpoint(self, tmp_path):
        settings = settings_from_mapping(base_config(tmp_path), env={})
        with pytest.raises(ConfigError):
            build_adapters(settings)
