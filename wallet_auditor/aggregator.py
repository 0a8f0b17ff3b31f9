from __future__ import annotations

import logging
import math
from collections import Counter
from typing import Optional, Sequence

from wallet_auditor.capital import track
from wallet_auditor.config import Config
from wallet_auditor.models import (
    CapitalLedger,
    ClosedTrade,
    OpenPosition,
    OverviewAggregate,
    TokenAggregate,
    TokenStatus,
    Verification,
)


log = logging.getLogger("wallet_auditor.aggregator")


def classify_token_status(
    is_rugged: bool,
    open_position_count: int,
    closed_position_count: int,
    total_realized_pnl: float,
    escape_pnl_threshold: float = -50.0,
) -> TokenStatus:
    if is_rugged and open_position_count > 0:
        return TokenStatus.RUGGED
    if open_position_count > 0 and closed_position_count == 0:
        return TokenStatus.HOLDING
    if closed_position_count > 0 and open_position_count == 0:
        if total_realized_pnl >= escape_pnl_threshold:
            return TokenStatus.EXITED
        return TokenStatus.ESCAPED
    if closed_position_count > 0 and open_position_count > 0:
        return TokenStatus.PARTIAL
    return TokenStatus.UNKNOWN


def _new_token(address: str, symbol: str) -> TokenAggregate:
    return TokenAggregate(token_address=address, token_symbol=symbol)


def _touch(token: TokenAggregate, *timestamps: int) -> None:
    for ts in timestamps:
        if token.first_trade_timestamp is None or ts < token.first_trade_timestamp:
            token.first_trade_timestamp = ts
        if token.last_trade_timestamp is None or ts > token.last_trade_timestamp:
            token.last_trade_timestamp = ts


def aggregate_tokens(
    closed: Sequence[ClosedTrade],
    open_positions: Sequence[OpenPosition],
    config: Optional[Config] = None,
) -> list[TokenAggregate]:
    config = config or Config()
    tokens: dict[str, TokenAggregate] = {}
    holding_seconds: dict[str, list[float]] = {}

    for trade in closed:
        token = tokens.setdefault(
            trade.token_address, _new_token(trade.token_address, trade.token_symbol)
        )
        token.total_trades += 1
        token.closed_trades += 1
        token.total_invested += trade.entry_value_usd
        token.total_returned += trade.exit_value_usd
        token.total_realized_pnl += trade.realized_pnl
        if trade.realized_pnl > 0:
            token.winning_trades += 1
        else:
            token.losing_trades += 1
        _touch(token, trade.entry_timestamp, trade.exit_timestamp)
        holding_seconds.setdefault(trade.token_address, []).append(trade.holding_time_seconds)

        if trade.rug is not None and trade.rug.is_rug:
            token.is_rugged = True
            token.traded_rug_token = True
            token.rug_flags.append("Traded token that later rugged")

    for position in open_positions:
        token = tokens.setdefault(
            position.token_address, _new_token(position.token_address, position.token_symbol)
        )
        token.total_trades += 1
        token.open_positions += 1
        token.is_held = True
        token.total_invested += position.entry_value_usd
        _touch(token, position.entry_timestamp, position.last_entry_timestamp or position.entry_timestamp)

        if position.rug is not None and position.rug.is_rug:
            token.is_rugged = True
            token.rugged_positions += 1
            token.losing_trades += 1
            token.total_confirmed_loss += position.rug.confirmed_loss_usd or 0.0
            token.rug_flags.extend(position.rug.rug_reasons)

    for address, token in tokens.items():
        token.net_pnl = token.total_realized_pnl - token.total_confirmed_loss
        if token.total_invested > 0:
            token.avg_roi = token.net_pnl / token.total_invested * 100
        # Only closed trades have a decided outcome.
        if token.closed_trades > 0:
            token.win_rate = token.winning_trades / token.closed_trades * 100
        if token.first_trade_timestamp is not None and token.last_trade_timestamp is not None:
            token.trading_window_hours = (
                token.last_trade_timestamp - token.first_trade_timestamp
            ) / 3_600_000
        holds = holding_seconds.get(address)
        if holds:
            token.avg_holding_hours = sum(holds) / len(holds) / 3600
        token.rug_flags = list(dict.fromkeys(token.rug_flags))
        token.status = classify_token_status(
            token.is_rugged,
            token.open_positions,
            token.closed_trades,
            token.total_realized_pnl,
            config.escape_pnl_threshold,
        )

    return sorted(tokens.values(), key=lambda t: (-t.net_pnl, t.token_address))


def verify(
    closed: Sequence[ClosedTrade],
    ledger: CapitalLedger,
    config: Config,
) -> Verification:
    realized = math.fsum(t.realized_pnl for t in closed)
    simple = math.fsum(t.exit_value_usd for t in closed) - math.fsum(
        t.entry_value_usd for t in closed
    )
    chronological = ledger.final_capital - ledger.starting_capital - ledger.unrealized_pnl

    def _close(a: float, b: float) -> bool:
        return math.isclose(
            a, b, rel_tol=config.verification_rel_tol, abs_tol=config.verification_abs_tol
        )

    return Verification(
        simple_sum_matches=_close(simple, realized),
        simple_sum_delta=simple - realized,
        chronological_matches=_close(chronological, realized),
        chronological_delta=chronological - realized,
        ledger_consistent=not ledger.consistency_issues,
        tolerance=config.verification_rel_tol,
    )


def aggregate_overview(
    closed: Sequence[ClosedTrade],
    open_positions: Sequence[OpenPosition],
    tokens: Sequence[TokenAggregate],
    ledger: CapitalLedger,
    config: Optional[Config] = None,
) -> OverviewAggregate:
    config = config or Config()
    rugged = [p for p in open_positions if p.rug is not None and p.rug.is_rug]

    buy_volume = math.fsum(t.entry_value_usd for t in closed) + math.fsum(
        p.entry_value_usd for p in open_positions
    )
    sell_volume = math.fsum(t.exit_value_usd for t in closed)
    realized = math.fsum(t.realized_pnl for t in closed)
    confirmed_loss = math.fsum(p.rug.confirmed_loss_usd or 0.0 for p in rugged)

    winners = sum(1 for t in closed if t.realized_pnl > 0)
    # Break-even trades count as losses, as at token level.
    losers = sum(1 for t in closed if t.realized_pnl <= 0) + len(rugged)
    decided = winners + losers

    overview = OverviewAggregate(
        total_trades=len(closed) + len(open_positions),
        closed_trades=len(closed),
        open_positions=len(open_positions),
        rugged_positions=len(rugged),
        winning_trades=winners,
        losing_trades=losers,
        win_rate=winners / decided * 100 if decided else None,
        total_buy_volume=buy_volume,
        total_sell_volume=sell_volume,
        volume_ratio=sell_volume / buy_volume if buy_volume > 0 else None,
        starting_capital=ledger.starting_capital,
        peak_deployed=ledger.peak_deployed,
        final_capital=ledger.final_capital,
        wallet_growth_roi=ledger.wallet_growth_roi,
        trading_performance_roi=ledger.trading_performance_roi,
        total_gains=ledger.total_gains,
        total_losses=ledger.total_losses,
        total_realized_pnl=realized,
        total_confirmed_loss=confirmed_loss,
        total_unrealized_pnl=ledger.unrealized_pnl,
        net_pnl=realized - confirmed_loss,
        avg_roi=math.fsum(t.realized_roi for t in closed) / len(closed) if closed else None,
        tokens_traded=len(tokens),
        rugged_tokens=sum(1 for t in tokens if t.is_rugged),
        traded_rug_tokens=sum(1 for t in tokens if t.traded_rug_token),
        status_counts=dict(Counter(t.status.value for t in tokens)),
        verification=verify(closed, ledger, config),
    )

    if not overview.verification.all_passed:
        log.warning(
            "Verification mismatch: simple_sum_delta=%.9f chronological_delta=%.9f",
            overview.verification.simple_sum_delta,
            overview.verification.chronological_delta,
        )
    return overview


def aggregate(
    closed: Sequence[ClosedTrade],
    open_positions: Sequence[OpenPosition],
    ledger: Optional[CapitalLedger] = None,
    config: Optional[Config] = None,
) -> tuple[list[TokenAggregate], OverviewAggregate]:
    config = config or Config()
    if ledger is None:
        ledger = track(closed, open_positions)
    tokens = aggregate_tokens(closed, open_positions, config)
    overview = aggregate_overview(closed, open_positions, tokens, ledger, config)
    return tokens, overview
