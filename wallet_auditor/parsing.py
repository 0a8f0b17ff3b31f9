from __future__ import annotations

import logging
import math
from typing import Any, Optional

from wallet_auditor.models import Candle, Side, Swap, TokenState, Transaction


log = logging.getLogger("wallet_auditor.parsing")


def to_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        out = float(value)
    elif isinstance(value, str):
        try:
            out = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    if math.isnan(out) or math.isinf(out):
        return default
    return out


def to_int(value: Any, default: int = 0) -> int:
    number = to_float(value)
    if number is None:
        return default
    return int(number)


def parse_time_ms(value: Any) -> int:
    ts = to_int(value, 0)
    # Convert seconds to ms if needed.
    if 0 < ts < 10_000_000_000:
        ts *= 1000
    return ts


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] not in (None, ""):
            return raw[key]
    return None


def parse_side(value: Any) -> Optional[Side]:
    text = str(value if value is not None else "").strip().lower()
    if text in {"1", "buy", "b"}:
        return Side.BUY
    if text in {"2", "sell", "s", "a"}:
        return Side.SELL
    return None


def parse_transaction(raw: dict[str, Any]) -> Optional[Transaction]:
    """Build a Transaction from either the snake_case contract or an OKX row.

    Returns None only when the side cannot be read; missing numbers are kept
    as None so the matcher can count them as malformed.
    """
    if not isinstance(raw, dict):
        return None

    side = parse_side(_first(raw, "side", "type", "tradeType"))
    if side is None:
        return None

    return Transaction(
        token_address=str(_first(raw, "token_address", "tokenContractAddress") or ""),
        side=side,
        amount=to_float(_first(raw, "amount", "tokenAmount")),
        usd_value=to_float(_first(raw, "usd_value", "turnover", "volume", "usdValue")),
        price=to_float(_first(raw, "price", "tokenPrice")),
        timestamp=parse_time_ms(_first(raw, "timestamp_ms", "timestamp", "blockTime")),
        tx_hash=str(_first(raw, "tx_hash", "txHash") or ""),
        block_height=to_int(_first(raw, "block_height", "blockHeight", "h"), 0),
        token_symbol=str(_first(raw, "token_symbol", "tokenSymbol") or ""),
    )


def parse_transactions(rows: Any) -> list[Transaction]:
    if not isinstance(rows, list):
        return []
    out: list[Transaction] = []
    skipped = 0
    for row in rows:
        tx = parse_transaction(row)
        if tx is None:
            skipped += 1
            continue
        out.append(tx)
    if skipped:
        log.warning("Skipped %d transaction rows with unreadable side", skipped)
    return out


def parse_swap(raw: dict[str, Any]) -> Optional[Swap]:
    if not isinstance(raw, dict):
        return None
    ts = parse_time_ms(raw.get("ts"))
    if not ts:
        return None
    return Swap(
        ts=ts,
        h=to_int(raw.get("h"), 0),
        tx=str(raw.get("tx") or raw.get("txId") or ""),
        ma=str(raw.get("ma") or ""),
        t0a=str(raw.get("t0a") or ""),
        t1a=str(raw.get("t1a") or ""),
        t0pu=to_float(raw.get("t0pu")),
        t1pu=to_float(raw.get("t1pu")),
    )


def parse_swaps(rows: Any) -> list[Swap]:
    if not isinstance(rows, list):
        return []
    return [s for s in (parse_swap(r) for r in rows) if s is not None]


def parse_candle(raw: Any) -> Optional[Candle]:
    # OKX rows: [timestamp, open, high, low, close, volume, trades, active]
    if isinstance(raw, (list, tuple)):
        if len(raw) < 5:
            return None
        values = list(raw) + [None] * (6 - len(raw))
        ts, o, h, l, c, v = values[:6]
    elif isinstance(raw, dict):
        ts = _first(raw, "timestamp_ms", "timestamp", "ts", "t")
        o, h, l, c = raw.get("open"), raw.get("high"), raw.get("low"), raw.get("close")
        v = raw.get("volume")
    else:
        return None

    timestamp = parse_time_ms(ts)
    high = to_float(h)
    low = to_float(l)
    if not timestamp or high is None or low is None:
        return None
    return Candle(
        timestamp=timestamp,
        open=to_float(o, 0.0),
        high=high,
        low=low,
        close=to_float(c, 0.0),
        volume=to_float(v, 0.0),
    )


def parse_candles(rows: Any) -> list[Candle]:
    if not isinstance(rows, list):
        return []
    return [c for c in (parse_candle(r) for r in rows) if c is not None]


def parse_token_state(raw: Any) -> Optional[TokenState]:
    if not isinstance(raw, dict) or not raw:
        return None

    if "liquidity_usd" in raw or "dev_rug_history_count" in raw:
        return TokenState(
            liquidity_usd=to_float(raw.get("liquidity_usd")),
            price=to_float(raw.get("price")),
            dev_rug_history_count=to_int(raw.get("dev_rug_history_count"), 0),
            holder_concentration=to_float(raw.get("holder_concentration")),
            recent_trade_count=(
                to_int(raw["recent_trade_count"])
                if raw.get("recent_trade_count") is not None
                else None
            ),
        )

    # Token overview payload
    market_info = raw.get("marketInfo") or {}
    basic_info = raw.get("basicInfo") or {}
    if not isinstance(market_info, dict):
        market_info = {}
    if not isinstance(basic_info, dict):
        basic_info = {}

    concentration = to_float(_first(raw, "devHoldingRatio", "top10HoldAmountPercentage"))
    if concentration is not None and concentration > 1:
        concentration /= 100.0

    recent_trades = _first(market_info, "tradeNum", "txs24h")
    return TokenState(
        liquidity_usd=to_float(market_info.get("totalLiquidity")),
        price=to_float(_first(market_info, "price", "tokenPrice") or raw.get("price")),
        dev_rug_history_count=to_int(basic_info.get("devRugPullTokenCount"), 0),
        holder_concentration=concentration,
        recent_trade_count=to_int(recent_trades) if recent_trades is not None else None,
    )
