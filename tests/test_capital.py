import pytest

from wallet_auditor.aggregator import aggregate
from wallet_auditor.capital import flag_inconsistent_trades, mark_value, track
from wallet_auditor.matcher import reconstruct
from wallet_auditor.models import ClosedTrade, OpenPosition, RugStatus, Side, Transaction

T0 = 1_700_000_000_000


def tx(side, amount, price, t, token="TokenA"):
    return Transaction(
        token_address=token,
        side=Side(side),
        amount=amount,
        usd_value=amount * price,
        price=price,
        timestamp=T0 + t * 1000,
    )


def closed_trade(entry_ts, exit_ts, entry_value, exit_value, token="TokenA"):
    return ClosedTrade(
        token_address=token,
        amount=1.0,
        entry_price=entry_value,
        exit_price=exit_value,
        entry_timestamp=entry_ts,
        exit_timestamp=exit_ts,
        entry_value_usd=entry_value,
        exit_value_usd=exit_value,
        realized_pnl=exit_value - entry_value,
        realized_roi=(exit_value - entry_value) / entry_value * 100,
        holding_time_seconds=(exit_ts - entry_ts) / 1000,
    )


def test_recycled_capital_is_not_double_counted():
    closed, open_positions = reconstruct(
        [
            tx("buy", 100, 1.0, 0),
            tx("sell", 100, 2.0, 10),
            tx("buy", 50, 1.0, 20, token="TokenB"),
        ]
    )
    ledger = track(closed, open_positions)

    assert ledger.starting_capital == pytest.approx(100)
    assert ledger.peak_deployed == pytest.approx(100)
    assert ledger.total_invested == pytest.approx(150)
    assert ledger.net_realized_pnl == pytest.approx(100)
    # Unenriched open positions are marked at cost.
    assert ledger.unrealized_pnl == pytest.approx(0)
    assert ledger.final_capital == pytest.approx(200)
    assert ledger.wallet_growth_roi == pytest.approx(100)
    assert ledger.trading_performance_roi == pytest.approx(100)
    assert ledger.consistency_issues == []


def test_entries_are_applied_before_exits_on_equal_timestamps():
    first = closed_trade(T0, T0 + 10_000, 100.0, 120.0)
    second = closed_trade(T0 + 10_000, T0 + 20_000, 50.0, 40.0, token="TokenB")
    ledger = track([first, second], [])

    assert ledger.peak_deployed == pytest.approx(150)
    assert [s.kind for s in ledger.snapshots] == ["entry", "entry", "exit", "exit"]
    assert ledger.total_gains == pytest.approx(20)
    assert ledger.total_losses == pytest.approx(10)


def test_deployed_capital_is_clamped_and_flagged():
    # Exit recorded before its entry: an inconsistent upstream record.
    broken = closed_trade(T0 + 5_000, T0, 100.0, 110.0)
    ledger = track([broken], [])

    assert ledger.consistency_issues[0].startswith("consistency_error: negative deployed capital")
    assert ledger.snapshots[0].clamped is True
    assert all(s.running_deployed >= 0 for s in ledger.snapshots)


def test_clamped_ledger_fails_verification_and_marks_the_trade():
    fine = closed_trade(T0 + 10_000, T0 + 20_000, 50.0, 60.0, token="TokenB")
    broken = closed_trade(T0 + 5_000, T0, 100.0, 110.0)
    closed = [fine, broken]
    ledger = track(closed, [])

    _, overview = aggregate(closed, [], ledger)
    flagged = flag_inconsistent_trades(closed, ledger)

    assert ledger.inconsistent_trade_indexes == [1]
    assert overview.verification.ledger_consistent is False
    assert overview.verification.all_passed is False
    assert flagged[0].issues == []
    assert flagged[1].issues == ["consistency_error: exit drove deployed capital negative"]
    assert broken.issues == []


def test_peak_is_never_below_starting_capital():
    closed, open_positions = reconstruct(
        [
            tx("buy", 10, 3.0, 0),
            tx("buy", 5, 2.0, 1, token="TokenB"),
            tx("sell", 10, 1.0, 2),
            tx("buy", 40, 1.0, 3, token="TokenC"),
        ]
    )
    ledger = track(closed, open_positions)

    assert ledger.peak_deployed >= ledger.starting_capital
    assert ledger.peak_deployed == pytest.approx(50)


def test_empty_history_has_no_roi():
    ledger = track([], [])

    assert ledger.starting_capital == 0
    assert ledger.final_capital == 0
    assert ledger.wallet_growth_roi is None
    assert ledger.trading_performance_roi is None


def test_rugged_position_marks_to_zero():
    position = OpenPosition(
        token_address="TokenA",
        amount=10.0,
        entry_price=2.0,
        entry_timestamp=T0,
        entry_value_usd=20.0,
        rug=RugStatus(is_rug=True, current_value_usd=0.0, confirmed_loss_usd=20.0),
    )
    ledger = track([], [position])

    assert mark_value(position) == 0.0
    assert ledger.unrealized_pnl == pytest.approx(-20)
    assert ledger.final_capital == pytest.approx(0)
    assert ledger.wallet_growth_roi == pytest.approx(-100)
