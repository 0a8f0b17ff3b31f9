from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Sequence

from wallet_auditor.aggregator import aggregate
from wallet_auditor.cache import ReportCache, report_fingerprint
from wallet_auditor.capital import flag_inconsistent_trades, track
from wallet_auditor.config import Config
from wallet_auditor.copytrade import simulate_all
from wallet_auditor.matcher import reconstruct
from wallet_auditor.models import (
    Candle,
    ClosedTrade,
    OpenPosition,
    Reconstruction,
    Swap,
    TokenState,
    Transaction,
    WalletReport,
)
from wallet_auditor.rug import enrich
from wallet_auditor.skill import annotate_excursions, compute_skill


log = logging.getLogger("wallet_auditor.pipeline")

DAY_MS = 24 * 3600 * 1000


class MarketData(Protocol):
    async def fetch_trade_history(
        self, wallet: str, chain: str, start_ms: int, end_ms: int
    ) -> list[Transaction]: ...

    async def fetch_token_state(self, token_address: str, chain: str) -> Optional[TokenState]: ...

    async def fetch_swaps(
        self, token_address: str, chain: str, start_ms: int, end_ms: int
    ) -> list[Swap]: ...

    async def fetch_candles(self, token_address: str, chain: str, after_ms: int) -> list[Candle]: ...


@dataclass
class TokenInputs:
    token_address: str
    state: Optional[TokenState] = None
    swaps: list[Swap] = field(default_factory=list)
    candles: list[Candle] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)


def assemble_report(
    recon: Reconstruction,
    token_states: Optional[Mapping[str, Optional[TokenState]]] = None,
    swap_feeds: Optional[Mapping[str, Sequence[Swap]]] = None,
    candle_feeds: Optional[Mapping[str, Sequence[Candle]]] = None,
    wallet_address: str = "",
    chain: str = "",
    config: Optional[Config] = None,
    token_issues: Optional[Mapping[str, list[str]]] = None,
) -> WalletReport:
    config = config or Config()
    closed: list[ClosedTrade] = list(recon.closed)
    open_positions: list[OpenPosition] = list(recon.open)

    if token_states is not None:
        closed = enrich(closed, token_states, config)
        open_positions = enrich(open_positions, token_states, config)

    if swap_feeds is not None or candle_feeds is not None:
        swaps = swap_feeds or {}
        candles = candle_feeds or {}
        closed = simulate_all(closed, wallet_address, swaps, candles, config)
        open_positions = simulate_all(open_positions, wallet_address, swaps, candles, config)

    if candle_feeds is not None:
        closed = annotate_excursions(closed, candle_feeds)

    # Join point: everything below needs every token's results.
    ledger = track(closed, open_positions)
    if ledger.inconsistent_trade_indexes:
        closed = flag_inconsistent_trades(closed, ledger)
    tokens, overview = aggregate(closed, open_positions, ledger, config)

    data_quality: dict[str, Any] = {
        "excluded_transactions": recon.excluded_count,
        "exclusion_reasons": dict(recon.exclusion_reasons),
        "ignored_transactions": recon.ignored_count,
        "unmatched_sells": len(recon.unmatched_sells),
        "unmatched_sell_amount_by_token": _unmatched_by_token(recon),
        "ledger_issues": list(ledger.consistency_issues),
        "token_issues": {k: list(v) for k, v in (token_issues or {}).items() if v},
    }

    return WalletReport(
        wallet_address=wallet_address,
        chain=chain,
        closed_trades=closed,
        open_positions=open_positions,
        tokens=tokens,
        overview=overview,
        ledger=ledger,
        data_quality=data_quality,
        skill=compute_skill(closed),
    )


def _unmatched_by_token(recon: Reconstruction) -> dict[str, float]:
    out: dict[str, float] = {}
    for sell in recon.unmatched_sells:
        out[sell.token_address] = out.get(sell.token_address, 0.0) + sell.amount
    return out


def build_report(
    transactions: Sequence[Transaction],
    token_states: Optional[Mapping[str, Optional[TokenState]]] = None,
    swap_feeds: Optional[Mapping[str, Sequence[Swap]]] = None,
    candle_feeds: Optional[Mapping[str, Sequence[Candle]]] = None,
    wallet_address: str = "",
    chain: str = "",
    config: Optional[Config] = None,
    window_start_ms: Optional[int] = None,
    window_end_ms: Optional[int] = None,
) -> WalletReport:
    recon = reconstruct(transactions, window_start_ms, window_end_ms)
    return assemble_report(
        recon,
        token_states=token_states,
        swap_feeds=swap_feeds,
        candle_feeds=candle_feeds,
        wallet_address=wallet_address,
        chain=chain,
        config=config,
    )


async def _guarded(coro: Any, timeout: float, what: str, inputs: TokenInputs) -> Any:
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        inputs.issues.append(f"{what}: timed out after {timeout:.0f}s")
    except Exception as exc:
        inputs.issues.append(f"{what}: {exc}")
    return None


async def fetch_token_inputs(
    client: MarketData,
    token_address: str,
    chain: str,
    entry_times: Sequence[int],
    config: Config,
    semaphore: asyncio.Semaphore,
) -> TokenInputs:
    inputs = TokenInputs(token_address=token_address)
    timeout = config.per_token_timeout_seconds
    start_ms = min(entry_times) - config.swap_lookback_ms
    end_ms = max(entry_times) + config.swap_lookahead_ms

    async with semaphore:
        state, swaps, candles = await asyncio.gather(
            _guarded(client.fetch_token_state(token_address, chain), timeout, "token_state", inputs),
            _guarded(client.fetch_swaps(token_address, chain, start_ms, end_ms), timeout, "swaps", inputs),
            _guarded(client.fetch_candles(token_address, chain, min(entry_times)), timeout, "candles", inputs),
        )

    inputs.state = state
    inputs.swaps = list(swaps or [])
    inputs.candles = list(candles or [])
    if inputs.issues:
        log.warning("Token %s degraded: %s", token_address[:10], "; ".join(inputs.issues))
    return inputs


async def analyze_wallet(
    client: MarketData,
    wallet: str,
    chain: str,
    config: Optional[Config] = None,
    now_ms: Optional[int] = None,
) -> WalletReport:
    config = config or Config()
    end_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    start_ms = end_ms - config.analysis_window_days * DAY_MS

    transactions = await client.fetch_trade_history(wallet, chain, start_ms, end_ms)
    recon = reconstruct(transactions, start_ms, end_ms)

    entry_times: dict[str, list[int]] = {}
    for trade in [*recon.closed, *recon.open]:
        entry_times.setdefault(trade.token_address, []).append(trade.entry_timestamp)

    # Scatter: tokens are disjoint, so each one is fetched independently.
    semaphore = asyncio.Semaphore(max(1, config.max_concurrency))
    results = await asyncio.gather(
        *(
            fetch_token_inputs(client, token, chain, times, config, semaphore)
            for token, times in entry_times.items()
        )
    )

    token_states: dict[str, Optional[TokenState]] = {}
    swap_feeds: dict[str, list[Swap]] = {}
    candle_feeds: dict[str, list[Candle]] = {}
    token_issues: dict[str, list[str]] = {}
    for inputs in results:
        token_states[inputs.token_address] = inputs.state
        swap_feeds[inputs.token_address] = inputs.swaps
        candle_feeds[inputs.token_address] = inputs.candles
        token_issues[inputs.token_address] = inputs.issues

    log.info(
        "Fetched market data for %d tokens (%d degraded)",
        len(results),
        sum(1 for r in results if r.issues),
    )
    return assemble_report(
        recon,
        token_states=token_states,
        swap_feeds=swap_feeds,
        candle_feeds=candle_feeds,
        wallet_address=wallet,
        chain=chain,
        config=config,
        token_issues=token_issues,
    )


async def analyze_wallet_cached(
    cache: ReportCache,
    client: MarketData,
    wallet: str,
    chain: str,
    config: Optional[Config] = None,
    now_ms: Optional[int] = None,
) -> WalletReport:
    config = config or Config()
    end_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    # Minute buckets so repeated requests share one fingerprint.
    end_ms -= end_ms % 60_000
    start_ms = end_ms - config.analysis_window_days * DAY_MS
    key = report_fingerprint(wallet, chain, start_ms, end_ms)
    return await cache.get_or_compute(
        key, lambda: analyze_wallet(client, wallet, chain, config, now_ms=end_ms)
    )
