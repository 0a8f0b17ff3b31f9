"""Copy-trade simulation.

Estimates what a follower entering one market tick after the wallet would
have seen: the next swap in the token's global feed sets the copy entry, and
candles after the entry give the best and worst moves from that price.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from wallet_auditor.config import Config
from wallet_auditor.errors import SimulationUnavailable
from wallet_auditor.models import Candle, CopyTradeResult, OpenPosition, Swap, Trade


log = logging.getLogger("wallet_auditor.copytrade")

MATCH_TX_HASH = "tx_hash"
MATCH_WALLET_TIME = "wallet_time"
MATCH_NEAREST_TIME = "nearest_time"


@dataclass(slots=True)
class SwapMatch:
    index: int
    method: str


def reference_entry_price(trade: Trade) -> float:
    """Price of the buy behind ``entry_tx_hash``.

    An open position's ``entry_price`` averages every remaining lot, while the
    swap feed is searched for its first lot only.
    """
    if isinstance(trade, OpenPosition) and trade.entry_lot_price is not None:
        return trade.entry_lot_price
    return trade.entry_price


def _priced_swaps(swaps: Sequence[Swap], token_address: str) -> list[tuple[Swap, float]]:
    ordered = sorted(swaps, key=lambda s: (s.ts, s.h))
    out: list[tuple[Swap, float]] = []
    for swap in ordered:
        price = swap.price_for(token_address)
        if price is not None and price > 0:
            out.append((swap, price))
    return out


def locate_trade(
    priced: Sequence[tuple[Swap, float]],
    tx_hash: str,
    wallet_address: str,
    timestamp: int,
    tolerance_ms: int,
) -> Optional[SwapMatch]:
    if not priced:
        return None

    if tx_hash:
        for idx, (swap, _) in enumerate(priced):
            if swap.tx == tx_hash:
                return SwapMatch(idx, MATCH_TX_HASH)

    if wallet_address:
        wallet = wallet_address.lower()
        for idx, (swap, _) in enumerate(priced):
            if swap.ma.lower() == wallet and abs(swap.ts - timestamp) <= tolerance_ms:
                return SwapMatch(idx, MATCH_WALLET_TIME)

    # min() keeps the earliest index on equal distance.
    idx = min(range(len(priced)), key=lambda i: abs(priced[i][0].ts - timestamp))
    return SwapMatch(idx, MATCH_NEAREST_TIME)


def candle_frame(candles: Sequence[Candle], after_ms: int) -> pd.DataFrame:
    df = pd.DataFrame(
        [(c.timestamp, c.high, c.low) for c in candles],
        columns=["timestamp", "high", "low"],
    )
    if df.empty:
        return df
    df = df[df["timestamp"] >= after_ms].sort_values("timestamp", kind="mergesort")
    return df.reset_index(drop=True)


def _move_pct(price: float, base: float) -> float:
    return float((price - base) / base * 100)


def _first_cross(df: pd.DataFrame, target: float) -> Optional[int]:
    hits = (df["high"] >= target).to_numpy()
    if not hits.any():
        return None
    return int(df["timestamp"].iloc[int(np.argmax(hits))])


def candle_metrics(
    candles: Sequence[Candle],
    copy_price: float,
    entry_timestamp: int,
    first_window_ms: int = 3_600_000,
) -> dict[str, Optional[float]]:
    df = candle_frame(candles, entry_timestamp)
    if df.empty:
        raise SimulationUnavailable("no candles after entry")

    first = df[df["timestamp"] - entry_timestamp <= first_window_ms]
    reached_25 = _first_cross(df, copy_price * 1.25)
    reached_50 = _first_cross(df, copy_price * 1.50)

    return {
        "possible_gain_1h": _move_pct(first["high"].max(), copy_price) if not first.empty else None,
        "possible_loss_1h": _move_pct(first["low"].min(), copy_price) if not first.empty else None,
        "possible_gain_full": _move_pct(df["high"].max(), copy_price),
        "possible_loss_full": _move_pct(df["low"].min(), copy_price),
        "reached_25_percent_at": reached_25,
        "reached_50_percent_at": reached_50,
        "time_to_25_percent": reached_25 - entry_timestamp if reached_25 is not None else None,
        "time_to_50_percent": reached_50 - entry_timestamp if reached_50 is not None else None,
    }


def simulate(
    trade: Trade,
    wallet_address: str,
    swaps: Optional[Sequence[Swap]],
    candles: Optional[Sequence[Candle]],
    config: Optional[Config] = None,
) -> CopyTradeResult:
    config = config or Config()
    try:
        if not swaps:
            raise SimulationUnavailable("no swap data")
        if not candles:
            raise SimulationUnavailable("no candle data")

        priced = _priced_swaps(swaps, trade.token_address)
        match = locate_trade(
            priced,
            trade.entry_tx_hash,
            wallet_address,
            trade.entry_timestamp,
            config.copy_match_tolerance_ms,
        )
        if match is None:
            raise SimulationUnavailable("trade not found in swap feed")
        if match.index + 1 >= len(priced):
            raise SimulationUnavailable("no swap after trade")

        original_price = priced[match.index][1]
        next_price = priced[match.index + 1][1]
        # A follower never fills better than the wallet it copies.
        copy_price = max(next_price, reference_entry_price(trade))

        metrics = candle_metrics(
            candles, copy_price, trade.entry_timestamp, config.first_window_ms
        )
    except SimulationUnavailable as exc:
        return CopyTradeResult.unavailable(exc.reason)

    return CopyTradeResult(
        copy_entry_price=copy_price,
        match_method=match.method,
        original_swap_price=original_price,
        next_swap_price=next_price,
        **metrics,
    )


def simulate_all(
    trades: Sequence[Trade],
    wallet_address: str,
    swap_feeds: Mapping[str, Sequence[Swap]],
    candle_feeds: Mapping[str, Sequence[Candle]],
    config: Optional[Config] = None,
) -> list[Trade]:
    config = config or Config()
    out: list[Trade] = []
    unavailable = 0
    for trade in trades:
        result = simulate(
            trade,
            wallet_address,
            swap_feeds.get(trade.token_address),
            candle_feeds.get(trade.token_address),
            config,
        )
        issues = list(trade.issues)
        if result.unavailable_reason:
            unavailable += 1
            issues.append(SimulationUnavailable(result.unavailable_reason).issue())
        out.append(replace(trade, copy_trade=result, issues=issues))

    if unavailable:
        log.info("Copy-trade simulation unavailable for %d/%d trades", unavailable, len(trades))
    return out
