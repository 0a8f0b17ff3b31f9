"""Trader skill scoring over closed trades.

Runs after aggregation. Candle highs between entry and exit give each closed
trade a best reachable price; entry and exit scores then measure how much of
that move the wallet actually captured.
"""
from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from wallet_auditor.copytrade import candle_frame
from wallet_auditor.models import Candle, ClosedTrade, HoldExcursion, SkillMetrics


log = logging.getLogger("wallet_auditor.skill")

NEUTRAL_SCORE = 50
EARLY_EXIT_PENALTY = 20.0
PEAK_TIMING_HOURS = 24.0


def _round_score(value: float) -> int:
    # Half-up, so 62.5 scores 63.
    return int(math.floor(value + 0.5))


def find_max_price_during_hold(
    candles: Sequence[Candle],
    entry_timestamp: int,
    exit_timestamp: int,
) -> Optional[tuple[float, int]]:
    """Highest candle high inside ``[entry, exit]`` and the candle it came from."""
    df = candle_frame(candles, entry_timestamp)
    if df.empty:
        return None
    held = df[df["timestamp"] <= exit_timestamp]
    if held.empty:
        return None
    # argmax keeps the first candle on ties.
    idx = int(np.argmax(held["high"].to_numpy()))
    return float(held["high"].iloc[idx]), int(held["timestamp"].iloc[idx])


def hold_excursion(trade: ClosedTrade, candles: Sequence[Candle]) -> Optional[HoldExcursion]:
    peak = find_max_price_during_hold(candles, trade.entry_timestamp, trade.exit_timestamp)
    if peak is None or peak[0] <= 0 or trade.entry_price <= 0:
        return None

    max_price, peak_ts = peak
    potential = (max_price / trade.entry_price - 1) * 100

    after = candle_frame(candles, trade.exit_timestamp + 1)
    early_exit = bool(not after.empty and after["high"].max() > max_price)

    return HoldExcursion(
        max_price_during_hold=max_price,
        peak_timestamp=peak_ts,
        time_to_peak_hours=(peak_ts - trade.entry_timestamp) / 3_600_000,
        max_potential_roi=potential,
        capture_efficiency=trade.realized_roi / potential * 100 if potential > 0 else None,
        early_exit=early_exit,
    )


def annotate_excursions(
    closed: Sequence[ClosedTrade],
    candle_feeds: Mapping[str, Sequence[Candle]],
) -> list[ClosedTrade]:
    out: list[ClosedTrade] = []
    for trade in closed:
        candles = candle_feeds.get(trade.token_address)
        excursion = hold_excursion(trade, candles) if candles else None
        out.append(replace(trade, excursion=excursion, issues=list(trade.issues)))
    return out


def entry_skill_score(trades: Sequence[ClosedTrade]) -> Optional[int]:
    """Half capture ratio, half time-to-peak (longer means an earlier entry)."""
    if not trades:
        return None
    scored = [t for t in trades if t.excursion is not None and t.excursion.max_potential_roi > 0]
    if not scored:
        return NEUTRAL_SCORE

    ratio = float(np.mean([t.realized_roi / t.excursion.max_potential_roi for t in scored]))
    peaks = [t.excursion.time_to_peak_hours for t in scored if t.excursion.time_to_peak_hours > 0]
    timing = min(float(np.mean(peaks)) / PEAK_TIMING_HOURS * 100, 100.0) if peaks else 0.0

    return _round_score(min(ratio * 100, 100.0) * 0.5 + timing * 0.5)


def exit_skill_score(trades: Sequence[ClosedTrade]) -> Optional[int]:
    """How close to the in-hold peak the wallet sold, minus an early-exit penalty."""
    if not trades:
        return None
    efficiency: list[float] = []
    for t in trades:
        if t.excursion is None or t.excursion.max_price_during_hold <= 0:
            continue
        price_range = t.excursion.max_price_during_hold - t.entry_price
        efficiency.append((t.exit_price - t.entry_price) / price_range if price_range > 0 else 0.0)
    if not efficiency:
        return NEUTRAL_SCORE

    early = sum(1 for t in trades if t.excursion is not None and t.excursion.early_exit)
    penalty = early / len(trades) * EARLY_EXIT_PENALTY
    return _round_score(max(0.0, min(100.0, float(np.mean(efficiency)) * 100 - penalty)))


def copy_trade_rating(
    win_rate: Optional[float],
    avg_realized_roi: Optional[float],
    median_max_potential_roi: Optional[float],
    entry_skill: Optional[int],
) -> str:
    win = win_rate or 0.0
    roi = avg_realized_roi or 0.0
    potential = median_max_potential_roi or 0.0
    entry = entry_skill or 0

    if win >= 70 and roi >= 30 and potential >= 50 and entry >= 70:
        return "Excellent"
    if win >= 60 and roi >= 20 and entry >= 60:
        return "Good"
    if win >= 50 or roi >= 10:
        return "Fair"
    return "Poor"


def token_concentration(trades: Sequence[ClosedTrade]) -> tuple[Optional[int], Optional[float], str]:
    """Herfindahl index of absolute realized PnL per token (0-10000)."""
    if not trades:
        return None, None, "N/A"
    pnl = pd.Series(
        [t.realized_pnl for t in trades], index=[t.token_address for t in trades]
    ).groupby(level=0).sum().abs()
    total = float(pnl.sum())
    if total <= 0:
        return 0, 0.0, "Diversified"

    shares = pnl / total * 100
    hhi = _round_score(float((shares ** 2).sum()))
    if hhi > 2500:
        rating = "Highly Concentrated"
    elif hhi > 1500:
        rating = "Moderately Concentrated"
    elif hhi > 1000:
        rating = "Slightly Concentrated"
    else:
        rating = "Diversified"
    return hhi, float(shares.max()), rating


def _mean_or_none(values: Sequence[float]) -> Optional[float]:
    return float(np.mean(values)) if len(values) else None


def compute_skill(closed: Sequence[ClosedTrade]) -> SkillMetrics:
    if not closed:
        return SkillMetrics()

    winners = [t for t in closed if t.realized_pnl > 0]
    losers = [t for t in closed if t.realized_pnl <= 0]
    rois = [t.realized_roi for t in closed]
    potentials = [
        t.excursion.max_potential_roi
        for t in closed
        if t.excursion is not None and t.excursion.max_potential_roi > 0
    ]

    metrics = SkillMetrics(
        trades_scored=len(closed),
        win_rate=len(winners) / len(closed) * 100,
        avg_realized_roi=float(np.mean(rois)),
        median_realized_roi=float(np.median(rois)),
        median_max_potential_roi=float(np.median(potentials)) if potentials else None,
        avg_holding_hours_winners=_mean_or_none([t.holding_time_seconds / 3600 for t in winners]),
        avg_holding_hours_losers=_mean_or_none([t.holding_time_seconds / 3600 for t in losers]),
        entry_skill_score=entry_skill_score(closed),
        exit_skill_score=exit_skill_score(closed),
    )
    metrics.overall_skill_score = _round_score(
        (metrics.entry_skill_score + metrics.exit_skill_score) / 2
    )
    metrics.copy_trade_rating = copy_trade_rating(
        metrics.win_rate,
        metrics.avg_realized_roi,
        metrics.median_max_potential_roi,
        metrics.entry_skill_score,
    )
    (
        metrics.token_concentration_index,
        metrics.top_token_pnl_percent,
        metrics.concentration_rating,
    ) = token_concentration(closed)

    log.debug(
        "Skill over %d trades: entry=%s exit=%s rating=%s",
        len(closed),
        metrics.entry_skill_score,
        metrics.exit_skill_score,
        metrics.copy_trade_rating,
    )
    return metrics
