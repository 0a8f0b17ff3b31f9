"""Chronological capital ledger.

Volume sums overstate what a wallet actually needed: the same dollars are
recycled from trade to trade. Walking entries and exits in time order shows
how much capital was really deployed at once, which is the denominator for
trading performance ROI.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from wallet_auditor.errors import ConsistencyError
from wallet_auditor.models import CapitalLedger, CapitalSnapshot, ClosedTrade, OpenPosition


log = logging.getLogger("wallet_auditor.capital")

ENTRY = "entry"
EXIT = "exit"


@dataclass(slots=True)
class _Event:
    timestamp: int
    kind: str
    token_address: str
    cost: float
    proceeds: float
    block_height: int
    trade_index: Optional[int] = None

    def sort_key(self) -> tuple[int, int, int]:
        # Capital is deployed before it can be returned on exact ties.
        return (self.timestamp, 0 if self.kind == ENTRY else 1, self.block_height)


def _events(closed: Sequence[ClosedTrade], open_positions: Sequence[OpenPosition]) -> list[_Event]:
    events: list[_Event] = []
    for index, trade in enumerate(closed):
        events.append(
            _Event(
                timestamp=trade.entry_timestamp,
                kind=ENTRY,
                token_address=trade.token_address,
                cost=trade.entry_value_usd,
                proceeds=0.0,
                block_height=trade.entry_block_height,
            )
        )
        events.append(
            _Event(
                timestamp=trade.exit_timestamp,
                kind=EXIT,
                token_address=trade.token_address,
                cost=trade.entry_value_usd,
                proceeds=trade.exit_value_usd,
                block_height=trade.exit_block_height,
                trade_index=index,
            )
        )
    for position in open_positions:
        events.append(
            _Event(
                timestamp=position.entry_timestamp,
                kind=ENTRY,
                token_address=position.token_address,
                cost=position.entry_value_usd,
                proceeds=0.0,
                block_height=position.entry_block_height,
            )
        )
    events.sort(key=_Event.sort_key)
    return events


def mark_value(position: OpenPosition) -> float:
    """Current value of an open position; cost basis when never enriched."""
    if position.rug is None or position.rug.current_value_usd is None:
        return position.entry_value_usd
    return position.rug.current_value_usd


def _pct(numerator: float, denominator: float) -> Optional[float]:
    if denominator <= 0:
        return None
    return numerator / denominator * 100


def track(
    closed: Sequence[ClosedTrade],
    open_positions: Sequence[OpenPosition],
) -> CapitalLedger:
    ledger = CapitalLedger()
    running_deployed = 0.0
    running_pnl = 0.0
    started = False

    for event in _events(closed, open_positions):
        clamped = False
        if event.kind == ENTRY:
            delta = event.cost
            running_deployed += delta
            ledger.total_invested += event.cost
        else:
            delta = -event.cost
            running_deployed += delta
            pnl = event.proceeds - event.cost
            running_pnl += pnl
            ledger.total_returned += event.proceeds
            if pnl > 0:
                ledger.total_gains += pnl
            elif pnl < 0:
                ledger.total_losses += -pnl

        if running_deployed < 0:
            # Tolerate float residue; anything larger is an ordering problem.
            if running_deployed < -1e-9 * max(1.0, ledger.total_invested):
                clamped = True
                issue = ConsistencyError(
                    f"negative deployed capital {running_deployed:.6f} at {event.timestamp}",
                    event.token_address,
                )
                ledger.consistency_issues.append(f"{issue.issue()} ({event.token_address})")
                if event.trade_index is not None:
                    ledger.inconsistent_trade_indexes.append(event.trade_index)
            running_deployed = 0.0

        if event.kind == ENTRY and not started:
            ledger.starting_capital = running_deployed
            started = True
        ledger.peak_deployed = max(ledger.peak_deployed, running_deployed)

        ledger.snapshots.append(
            CapitalSnapshot(
                timestamp=event.timestamp,
                kind=event.kind,
                token_address=event.token_address,
                capital_deployed_delta=delta,
                running_deployed=running_deployed,
                running_realized_pnl=running_pnl,
                clamped=clamped,
                trade_index=event.trade_index,
            )
        )

    open_cost = sum(p.entry_value_usd for p in open_positions)
    ledger.open_mark_value = float(sum(mark_value(p) for p in open_positions))
    ledger.unrealized_pnl = ledger.open_mark_value - open_cost
    ledger.net_realized_pnl = running_pnl
    ledger.final_capital = ledger.starting_capital + running_pnl + ledger.unrealized_pnl
    ledger.wallet_growth_roi = _pct(
        ledger.final_capital - ledger.starting_capital, ledger.starting_capital
    )
    ledger.trading_performance_roi = _pct(running_pnl, ledger.peak_deployed)

    if ledger.consistency_issues:
        log.warning("Capital ledger clamped %d times", len(ledger.consistency_issues))
    return ledger


def flag_inconsistent_trades(
    closed: Sequence[ClosedTrade],
    ledger: CapitalLedger,
) -> list[ClosedTrade]:
    """Attach a consistency issue to every closed trade whose exit clamped the ledger."""
    flagged = set(ledger.inconsistent_trade_indexes)
    if not flagged:
        return list(closed)
    out: list[ClosedTrade] = []
    for index, trade in enumerate(closed):
        if index in flagged:
            issue = ConsistencyError(
                "exit drove deployed capital negative", trade.token_address
            ).issue()
            trade = replace(trade, issues=[*trade.issues, issue])
        out.append(trade)
    return out
