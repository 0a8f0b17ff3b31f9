"""FIFO lot matching.

Turns a wallet's buy/sell stream into closed trades and open positions. Each
token keeps its own queue of buy lots; a sell consumes the oldest lots first
and every consumed slice becomes one ClosedTrade priced at that lot's entry
and the sell's exit.
"""
from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict, deque
from typing import Any, Optional, Sequence

from wallet_auditor.errors import DataError, InvalidInputError
from wallet_auditor.models import (
    ClosedTrade,
    Lot,
    OpenPosition,
    Reconstruction,
    Side,
    Transaction,
    UnmatchedSell,
)


log = logging.getLogger("wallet_auditor.matcher")

# Remainders at or below this share of the original quantity count as spent.
DUST_RATIO = 1e-9


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_transaction(tx: Any) -> Optional[float]:
    """Return the unit price to use for ``tx`` or raise DataError."""
    if not isinstance(tx, Transaction):
        raise DataError("not a transaction")
    if not tx.token_address:
        raise DataError("missing token address")
    if not isinstance(tx.side, Side):
        raise DataError("unknown side", tx.token_address)
    if not _is_number(tx.amount) or tx.amount < 0:
        raise DataError("missing amount", tx.token_address)
    if not tx.timestamp or tx.timestamp < 0:
        raise DataError("missing timestamp", tx.token_address)

    price = tx.price
    if not _is_number(price):
        if _is_number(tx.usd_value) and tx.amount > 0:
            price = tx.usd_value / tx.amount
        else:
            raise DataError("missing price", tx.token_address)
    if price < 0:
        raise DataError("negative price", tx.token_address)
    if tx.side is Side.BUY and price == 0 and tx.amount > 0:
        raise DataError("zero-priced buy", tx.token_address)
    return float(price)


def _close_slice(lot: Lot, amount: float, sell: Transaction, exit_price: float) -> ClosedTrade:
    entry_value = amount * lot.unit_price
    exit_value = amount * exit_price
    pnl = exit_value - entry_value
    return ClosedTrade(
        token_address=sell.token_address,
        token_symbol=sell.token_symbol,
        amount=amount,
        entry_price=lot.unit_price,
        exit_price=exit_price,
        entry_timestamp=lot.entry_timestamp,
        exit_timestamp=sell.timestamp,
        entry_value_usd=entry_value,
        exit_value_usd=exit_value,
        realized_pnl=pnl,
        realized_roi=pnl / entry_value * 100,
        holding_time_seconds=(sell.timestamp - lot.entry_timestamp) / 1000,
        entry_tx_hash=lot.source_tx_hash,
        exit_tx_hash=sell.tx_hash,
        entry_block_height=lot.block_height,
        exit_block_height=sell.block_height,
    )


def _collapse_lots(token_address: str, symbol: str, lots: Sequence[Lot]) -> Optional[OpenPosition]:
    live = [lot for lot in lots if lot.remaining_amount > 0]
    if not live:
        return None
    amount = sum(lot.remaining_amount for lot in live)
    cost = sum(lot.remaining_amount * lot.unit_price for lot in live)
    first = min(live, key=lambda lot: (lot.entry_timestamp, lot.block_height))
    return OpenPosition(
        token_address=token_address,
        token_symbol=symbol,
        amount=amount,
        entry_price=cost / amount,
        entry_timestamp=first.entry_timestamp,
        last_entry_timestamp=max(lot.entry_timestamp for lot in live),
        entry_value_usd=cost,
        lot_count=len(live),
        entry_tx_hash=first.source_tx_hash,
        entry_block_height=first.block_height,
        entry_lot_price=first.unit_price,
    )


def _match_token(
    token_address: str,
    rows: list[tuple[Transaction, float]],
    result: Reconstruction,
) -> None:
    queue: deque[Lot] = deque()
    symbol = next((tx.token_symbol for tx, _ in rows if tx.token_symbol), "")

    for tx, price in rows:
        if tx.side is Side.BUY:
            queue.append(
                Lot(
                    remaining_amount=float(tx.amount),
                    unit_price=price,
                    entry_timestamp=tx.timestamp,
                    source_tx_hash=tx.tx_hash,
                    block_height=tx.block_height,
                    original_amount=float(tx.amount),
                )
            )
            continue

        sell_total = float(tx.amount)
        remaining = sell_total
        while remaining > sell_total * DUST_RATIO and queue:
            lot = queue[0]
            matched = min(lot.remaining_amount, remaining)
            result.closed.append(_close_slice(lot, matched, tx, price))
            lot.remaining_amount -= matched
            remaining -= matched
            if lot.remaining_amount <= lot.original_amount * DUST_RATIO:
                queue.popleft()

        if remaining > sell_total * DUST_RATIO:
            result.unmatched_sells.append(
                UnmatchedSell(
                    token_address=token_address,
                    amount=remaining,
                    price=price,
                    timestamp=tx.timestamp,
                    tx_hash=tx.tx_hash,
                )
            )
            log.debug(
                "Sell %s on %s exceeds held lots by %.6f",
                tx.tx_hash or "?",
                token_address[:10],
                remaining,
            )

    position = _collapse_lots(token_address, symbol, queue)
    if position is not None:
        result.open.append(position)


def reconstruct(
    transactions: Sequence[Transaction],
    window_start_ms: Optional[int] = None,
    window_end_ms: Optional[int] = None,
) -> Reconstruction:
    if transactions is None or isinstance(transactions, (str, bytes, dict)):
        raise InvalidInputError("transactions must be a list of Transaction records")
    try:
        items = list(transactions)
    except TypeError as exc:
        raise InvalidInputError("transactions must be a list of Transaction records") from exc
    if not items:
        raise InvalidInputError("transaction list is empty")

    result = Reconstruction()
    reasons: Counter[str] = Counter()
    grouped: dict[str, list[tuple[int, Transaction, float]]] = defaultdict(list)

    for index, tx in enumerate(items):
        try:
            price = validate_transaction(tx)
        except DataError as exc:
            reasons[exc.reason] += 1
            continue

        if tx.amount == 0:
            result.ignored_count += 1
            continue
        if window_start_ms is not None and tx.timestamp < window_start_ms:
            result.ignored_count += 1
            continue
        if window_end_ms is not None and tx.timestamp > window_end_ms:
            result.ignored_count += 1
            continue

        grouped[tx.token_address].append((index, tx, price))

    result.excluded_count = sum(reasons.values())
    result.exclusion_reasons = dict(reasons)

    if result.excluded_count == len(items):
        raise InvalidInputError(
            f"all {len(items)} transactions are malformed ({dict(reasons)})"
        )
    if result.excluded_count:
        log.warning(
            "Excluded %d malformed transactions: %s",
            result.excluded_count,
            dict(reasons),
        )

    for token_address, rows in grouped.items():
        rows.sort(key=lambda row: (row[1].timestamp, row[1].block_height, row[0]))
        _match_token(token_address, [(tx, price) for _, tx, price in rows], result)

    log.info(
        "Reconstructed %d closed trades and %d open positions across %d tokens",
        len(result.closed),
        len(result.open),
        len(grouped),
    )
    return result
