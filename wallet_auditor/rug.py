"""Rug and liquidity enrichment for closed trades and open positions."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Mapping, Optional, Sequence, Union

from wallet_auditor.config import Config
from wallet_auditor.errors import EnrichmentUnavailable
from wallet_auditor.models import (
    ClosedTrade,
    LiquidityStatus,
    OpenPosition,
    PositionStatus,
    RugStatus,
    RugType,
    TokenState,
    Trade,
)


log = logging.getLogger("wallet_auditor.rug")

TokenStateLookup = Union[
    Mapping[str, Optional[TokenState]],
    Callable[[str], Optional[TokenState]],
]


@dataclass(slots=True)
class RugSignals:
    reasons: list[str]
    strong: int
    weak: int
    drained: bool

    @property
    def total(self) -> int:
        return self.strong + self.weak


def classify_liquidity(liquidity_usd: Optional[float], config: Config) -> LiquidityStatus:
    if liquidity_usd is None:
        return LiquidityStatus.UNKNOWN
    if liquidity_usd < config.rug_liquidity_usd:
        return LiquidityStatus.DRAINED
    if liquidity_usd < config.low_liquidity_usd:
        return LiquidityStatus.LOW
    if liquidity_usd < config.warning_liquidity_usd:
        return LiquidityStatus.WARNING
    return LiquidityStatus.OK


def evaluate_rug_signals(
    state: TokenState,
    reference_price: Optional[float],
    config: Config,
) -> RugSignals:
    reasons: list[str] = []
    strong = 0
    weak = 0
    liquidity_status = classify_liquidity(state.liquidity_usd, config)
    drained = liquidity_status is LiquidityStatus.DRAINED

    if drained:
        strong += 1
        reasons.append(f"Liquidity drained (${state.liquidity_usd:.2f})")

    if (
        state.price is not None
        and reference_price is not None
        and reference_price > 0
        and state.price / reference_price < config.price_collapse_ratio
    ):
        strong += 1
        drop = (1 - state.price / reference_price) * 100
        reasons.append(f"Price collapsed {drop:.1f}% from reference")

    if state.dev_rug_history_count > 0:
        weak += 1
        reasons.append(f"Deployer rug history ({state.dev_rug_history_count} tokens)")

    if (
        state.holder_concentration is not None
        and state.holder_concentration >= config.max_holder_concentration
    ):
        weak += 1
        reasons.append(f"Holder concentration {state.holder_concentration * 100:.1f}%")

    if state.recent_trade_count is not None and state.recent_trade_count == 0:
        weak += 1
        reasons.append("No recent counter-trades")

    if liquidity_status is LiquidityStatus.LOW:
        weak += 1
        reasons.append(f"Low liquidity (${state.liquidity_usd:.2f})")

    return RugSignals(reasons=reasons, strong=strong, weak=weak, drained=drained)


def is_rug(signals: RugSignals, config: Config) -> bool:
    # One signal on its own is never enough.
    if signals.strong >= 1 and signals.total >= 2:
        return True
    return signals.weak >= config.weak_signals_for_rug


def _rug_type(signals: RugSignals, rugged: bool) -> RugType:
    if not rugged:
        return RugType.NONE
    return RugType.HARD if signals.drained else RugType.SOFT


def _annotate_closed(trade: ClosedTrade, state: TokenState, config: Config) -> ClosedTrade:
    signals = evaluate_rug_signals(state, trade.exit_price, config)
    rugged = is_rug(signals, config)
    liquidity_status = classify_liquidity(state.liquidity_usd, config)
    warning = None
    if rugged:
        liquidity = state.liquidity_usd if state.liquidity_usd is not None else 0.0
        warning = f"Token later became rug (liquidity: ${liquidity:.2f})"
    status = RugStatus(
        is_rug=rugged,
        rug_type=_rug_type(signals, rugged),
        rug_reasons=signals.reasons,
        current_liquidity_usd=state.liquidity_usd,
        can_exit=None if state.liquidity_usd is None else liquidity_status is not LiquidityStatus.DRAINED,
        liquidity_status=liquidity_status,
        current_price=state.price,
        rug_warning=warning,
    )
    return replace(trade, rug=status, issues=list(trade.issues))


def _annotate_open(position: OpenPosition, state: TokenState, config: Config) -> OpenPosition:
    signals = evaluate_rug_signals(state, position.entry_price, config)
    rugged = is_rug(signals, config)
    liquidity_status = classify_liquidity(state.liquidity_usd, config)

    if rugged:
        current_value: Optional[float] = 0.0
        confirmed_loss = position.entry_value_usd
    elif state.price is not None:
        current_value = position.amount * state.price
        confirmed_loss = 0.0
    else:
        current_value = None
        confirmed_loss = 0.0

    status = RugStatus(
        is_rug=rugged,
        rug_type=_rug_type(signals, rugged),
        rug_reasons=signals.reasons,
        confirmed_loss_usd=confirmed_loss,
        current_liquidity_usd=state.liquidity_usd,
        can_exit=None if state.liquidity_usd is None else liquidity_status is not LiquidityStatus.DRAINED,
        liquidity_status=liquidity_status,
        position_status=PositionStatus.RUGGED if rugged else PositionStatus.HOLDING,
        current_price=state.price,
        current_value_usd=current_value,
        unrealized_pnl=(
            current_value - position.entry_value_usd if current_value is not None else None
        ),
    )
    return replace(position, rug=status, issues=list(position.issues))


def _lookup(token_states: TokenStateLookup, token_address: str) -> TokenState:
    try:
        if callable(token_states):
            state = token_states(token_address)
        else:
            state = token_states.get(token_address)
    except EnrichmentUnavailable:
        raise
    except Exception as exc:
        raise EnrichmentUnavailable(f"lookup failed: {exc}", token_address) from exc
    if state is None:
        raise EnrichmentUnavailable("no token state", token_address)
    return state


def enrich(
    items: Sequence[Trade],
    token_states: TokenStateLookup,
    config: Optional[Config] = None,
) -> list[Trade]:
    """Return rug-annotated copies of ``items``.

    Each distinct token is looked up once. When the lookup fails the item is
    passed through with ``rug=None`` and the failure recorded in its issues.
    """
    config = config or Config()
    resolved: dict[str, Union[TokenState, EnrichmentUnavailable]] = {}
    out: list[Trade] = []

    for item in items:
        token = item.token_address
        if token not in resolved:
            try:
                resolved[token] = _lookup(token_states, token)
            except EnrichmentUnavailable as exc:
                log.warning("Rug enrichment unavailable for %s: %s", token[:10], exc.reason)
                resolved[token] = exc

        state = resolved[token]
        if isinstance(state, EnrichmentUnavailable):
            out.append(replace(item, rug=None, issues=[*item.issues, state.issue()]))
        elif isinstance(item, OpenPosition):
            out.append(_annotate_open(item, state, config))
        else:
            out.append(_annotate_closed(item, state, config))

    return out
