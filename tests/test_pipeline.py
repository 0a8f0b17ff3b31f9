"""End-to-end report assembly and the async fan-out around it."""
import asyncio
import json

import pytest

from wallet_auditor.cache import ReportCache, report_fingerprint
from wallet_auditor.config import Config
from wallet_auditor.errors import InvalidInputError
from wallet_auditor.models import (
    Candle,
    ClosedTrade,
    Reconstruction,
    Side,
    Swap,
    TokenState,
    TokenStatus,
    Transaction,
)
from wallet_auditor.pipeline import (
    analyze_wallet,
    analyze_wallet_cached,
    assemble_report,
    build_report,
)

NOW = 1_700_000_000_000
WALLET = "WalletXyZ"


def tx(side, amount, price, minutes_ago, token, tx_hash=""):
    return Transaction(
        token_address=token,
        side=Side(side),
        amount=amount,
        usd_value=amount * price,
        price=price,
        timestamp=NOW - minutes_ago * 60_000,
        tx_hash=tx_hash,
    )


HISTORY = [
    tx("buy", 100, 1.0, 300, "Good", tx_hash="0xgood"),
    tx("sell", 100, 1.5, 200, "Good"),
    tx("buy", 50, 2.0, 250, "Bad", tx_hash="0xbad"),
    tx("buy", 20, 1.0, 100, "Slow", tx_hash="0xslow"),
    tx("buy", 5, 1.0, 60 * 24 * 30, "Stale"),
]


def feed_for(token, entry_ts, tx_hash):
    swaps = [
        Swap(ts=entry_ts, tx=tx_hash, ma=WALLET, t0a=token, t0pu=1.0),
        Swap(ts=entry_ts + 1_000, t0a=token, t0pu=1.02),
    ]
    candles = [Candle(timestamp=entry_ts + 60_000, open=1.0, high=1.3, low=0.95, close=1.1)]
    return swaps, candles


class FakeClient:
    def __init__(self, slow_seconds=1.0):
        self.slow_seconds = slow_seconds
        self.history_calls = 0
        self.state_calls = []

    async def fetch_trade_history(self, wallet, chain, start_ms, end_ms):
        self.history_calls += 1
        await asyncio.sleep(0.01)
        # Unfiltered; reconstruct() applies the window.
        return list(HISTORY)

    async def fetch_token_state(self, token_address, chain):
        self.state_calls.append(token_address)
        if token_address == "Bad":
            raise RuntimeError("overview returned 500")
        return TokenState(liquidity_usd=60_000, price=1.2)

    async def fetch_swaps(self, token_address, chain, start_ms, end_ms):
        if token_address == "Slow":
            await asyncio.sleep(self.slow_seconds)
        entry = next(t for t in HISTORY if t.token_address == token_address)
        return feed_for(token_address, entry.timestamp, entry.tx_hash)[0]

    async def fetch_candles(self, token_address, chain, after_ms):
        entry = next(t for t in HISTORY if t.token_address == token_address)
        return feed_for(token_address, entry.timestamp, entry.tx_hash)[1]


def test_build_report_without_market_data():
    report = build_report(HISTORY[:4], wallet_address=WALLET, chain="sol")

    assert report.overview.closed_trades == 1
    assert report.overview.open_positions == 2
    assert report.overview.total_realized_pnl == pytest.approx(50.0)
    assert report.overview.verification.all_passed
    assert all(t.rug is None and t.copy_trade is None for t in report.closed_trades)
    assert report.data_quality["excluded_transactions"] == 0
    assert report.data_quality["token_issues"] == {}


def test_report_serializes_to_plain_json():
    bad_row = Transaction("Good", Side.BUY, None, None, None, NOW)
    report = build_report(
        HISTORY[:4] + [bad_row],
        token_states={"Good": TokenState(liquidity_usd=60_000, price=1.2)},
        wallet_address=WALLET,
        chain="sol",
    )
    payload = report.to_dict(include_ledger=True)
    text = json.dumps(payload)

    assert payload["overview"]["verification"]["all_passed"] is True
    assert payload["data_quality"]["exclusion_reasons"] == {"missing amount": 1}
    assert payload["tokens"][0]["status"] in {s.value for s in TokenStatus}
    assert "ledger" in payload and payload["ledger"]["snapshots"]
    assert '"enrichment_unavailable: no token state"' in text


def test_build_report_rejects_empty_input():
    with pytest.raises(InvalidInputError):
        build_report([])


def test_one_failing_token_does_not_sink_the_report():
    config = Config(per_token_timeout_seconds=0.2, max_concurrency=2)
    client = FakeClient(slow_seconds=1.0)

    report = asyncio.run(analyze_wallet(client, WALLET, "sol", config, now_ms=NOW))

    by_token = {}
    for item in [*report.closed_trades, *report.open_positions]:
        by_token.setdefault(item.token_address, []).append(item)

    assert "Stale" not in by_token
    assert report.data_quality["ignored_transactions"] == 1
    assert sorted(client.state_calls) == ["Bad", "Good", "Slow"]

    good = by_token["Good"][0]
    assert good.rug is not None and good.rug.is_rug is False
    assert good.copy_trade.copy_entry_price == pytest.approx(1.02)
    assert good.excursion.max_price_during_hold == pytest.approx(1.3)
    assert report.skill.trades_scored == 1

    bad = by_token["Bad"][0]
    assert bad.rug is None
    assert any(i.startswith("enrichment_unavailable") for i in bad.issues)
    assert bad.copy_trade.is_available

    slow = by_token["Slow"][0]
    assert slow.rug is not None
    assert slow.copy_trade.unavailable_reason == "no swap data"

    issues = report.data_quality["token_issues"]
    assert issues["Bad"] == ["token_state: overview returned 500"]
    assert issues["Slow"][0].startswith("swaps: timed out")
    assert "Good" not in issues
    assert report.overview.verification.all_passed


def test_cached_analysis_runs_once_for_concurrent_requests():
    cache = ReportCache(ttl_seconds=60)
    client = FakeClient(slow_seconds=0.0)

    async def scenario():
        return await asyncio.gather(
            analyze_wallet_cached(cache, client, WALLET, "sol", now_ms=NOW),
            analyze_wallet_cached(cache, client, WALLET, "sol", now_ms=NOW + 5),
        )

    first, second = asyncio.run(scenario())

    assert first is second
    assert client.history_calls == 1
    assert cache.inflight_count == 0
    assert len(cache) == 1


def test_cache_expires_with_injected_clock():
    now = [0.0]
    cache = ReportCache(ttl_seconds=10, clock=lambda: now[0])
    cache.put("k", "report")

    assert cache.get("k") == "report"
    now[0] = 10.0
    assert cache.get("k") is None


def test_fingerprint_depends_on_window_not_case():
    a = report_fingerprint("WalletXyZ", "SOL", 1, 2)

    assert a == report_fingerprint("walletxyz", "sol", 1, 2)
    assert a != report_fingerprint("walletxyz", "sol", 1, 3)


def test_invalidate_drops_entry():
    cache = ReportCache(ttl_seconds=60)
    cache.put("k", "report")
    cache.invalidate("k")

    assert cache.get("k") is None


def test_put_purges_expired_records():
    now = [0.0]
    cache = ReportCache(ttl_seconds=10, clock=lambda: now[0])
    cache.put("old", "a")
    cache.put("older", "b")
    now[0] = 15.0
    cache.put("fresh", "c")

    assert len(cache) == 1
    assert cache.get("fresh") == "c"


def test_failed_computation_releases_its_key_lock():
    cache = ReportCache(ttl_seconds=60)

    async def boom():
        raise RuntimeError("upstream down")

    async def scenario():
        with pytest.raises(RuntimeError):
            await cache.get_or_compute("k", boom)

    asyncio.run(scenario())

    assert cache.inflight_count == 0
    assert len(cache) == 0


def test_clamped_ledger_surfaces_on_the_offending_trade():
    broken = ClosedTrade(
        token_address="Broken",
        amount=1.0,
        entry_price=100.0,
        exit_price=110.0,
        entry_timestamp=NOW,
        exit_timestamp=NOW - 5_000,
        entry_value_usd=100.0,
        exit_value_usd=110.0,
        realized_pnl=10.0,
        realized_roi=10.0,
        holding_time_seconds=-5.0,
    )
    report = assemble_report(Reconstruction(closed=[broken]), wallet_address=WALLET)
    payload = report.to_dict()

    assert report.closed_trades[0].issues == [
        "consistency_error: exit drove deployed capital negative"
    ]
    assert len(report.data_quality["ledger_issues"]) == 1
    assert report.overview.verification.all_passed is False
    assert payload["overview"]["verification"]["all_passed"] is False
