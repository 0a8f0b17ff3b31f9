import pytest

from wallet_auditor.models import Side
from wallet_auditor.parsing import (
    parse_candle,
    parse_swap,
    parse_time_ms,
    parse_token_state,
    parse_transaction,
    parse_transactions,
    to_float,
)


@pytest.mark.parametrize(
    "raw, expected",
    [("1.5", 1.5), (2, 2.0), (" 3 ", 3.0), ("nan", None), ("inf", None), (True, None), ("abc", None), (None, None)],
)
def test_to_float(raw, expected):
    assert to_float(raw) == expected


def test_parse_time_ms_converts_seconds():
    assert parse_time_ms(1_700_000_000) == 1_700_000_000_000
    assert parse_time_ms("1700000000123") == 1_700_000_000_123
    assert parse_time_ms(None) == 0


def test_parse_okx_trade_row():
    tx = parse_transaction(
        {
            "type": "2",
            "tokenContractAddress": "Mint111",
            "tokenSymbol": "PEPE",
            "tokenAmount": "2500.5",
            "turnover": "125.025",
            "price": "0.05",
            "blockTime": "1700000000000",
            "txHash": "5xSig",
        }
    )

    assert tx.side is Side.SELL
    assert tx.token_address == "Mint111"
    assert tx.token_symbol == "PEPE"
    assert tx.amount == pytest.approx(2500.5)
    assert tx.usd_value == pytest.approx(125.025)
    assert tx.price == pytest.approx(0.05)
    assert tx.timestamp == 1_700_000_000_000
    assert tx.tx_hash == "5xSig"


def test_parse_snake_case_row_keeps_missing_numbers_as_none():
    tx = parse_transaction({"side": "buy", "token_address": "Mint111", "timestamp": 1_700_000_000})

    assert tx.side is Side.BUY
    assert tx.amount is None
    assert tx.price is None
    assert tx.timestamp == 1_700_000_000_000


def test_unreadable_side_is_skipped():
    rows = [{"side": "transfer", "token_address": "A"}, {"side": "sell", "token_address": "A"}, "junk"]
    assert [t.side for t in parse_transactions(rows)] == [Side.SELL]
    assert parse_transactions(None) == []


def test_parse_swap():
    swap = parse_swap(
        {"ts": "1700000000", "h": 12, "txId": "0xs", "ma": "Maker", "t0a": "A", "t1a": "B", "t0pu": "1", "t1pu": "0.2"}
    )

    assert swap.ts == 1_700_000_000_000
    assert swap.tx == "0xs"
    assert swap.price_for("b") == pytest.approx(0.2)
    assert swap.price_for("C") is None
    assert parse_swap({"h": 1}) is None


def test_parse_candle_list_and_dict():
    from_list = parse_candle(["1700000000000", "1", "2", "0.5", "1.5", "100", "8", "1"])
    from_dict = parse_candle({"timestamp": 1_700_000_000, "high": 2, "low": "0.5"})

    assert from_list.high == 2.0
    assert from_list.low == 0.5
    assert from_list.volume == 100.0
    assert from_dict.timestamp == 1_700_000_000_000
    assert from_dict.close == 0.0
    assert parse_candle(["1", "2"]) is None


def test_parse_token_overview():
    state = parse_token_state(
        {
            "marketInfo": {"totalLiquidity": "5400.5", "price": "0.0012", "tradeNum": "0"},
            "basicInfo": {"devRugPullTokenCount": "3"},
            "top10HoldAmountPercentage": "65",
        }
    )

    assert state.liquidity_usd == pytest.approx(5400.5)
    assert state.price == pytest.approx(0.0012)
    assert state.dev_rug_history_count == 3
    assert state.holder_concentration == pytest.approx(0.65)
    assert state.recent_trade_count == 0


def test_parse_token_state_snake_case():
    state = parse_token_state({"liquidity_usd": 50, "price": "1.2", "holder_concentration": 0.4})

    assert state.liquidity_usd == 50.0
    assert state.recent_trade_count is None
    assert state.dev_rug_history_count == 0
    assert parse_token_state({}) is None
