import pytest

from wallet_auditor.aggregator import aggregate, aggregate_tokens, classify_token_status
from wallet_auditor.capital import track
from wallet_auditor.config import Config
from wallet_auditor.matcher import reconstruct
from wallet_auditor.models import Side, TokenState, TokenStatus, Transaction
from wallet_auditor.rug import enrich

T0 = 1_700_000_000_000


def tx(side, amount, price, t, token):
    return Transaction(
        token_address=token,
        side=Side(side),
        amount=amount,
        usd_value=amount * price,
        price=price,
        timestamp=T0 + t * 1000,
    )


@pytest.mark.parametrize(
    "is_rugged, open_count, closed_count, pnl, expected",
    [
        (False, 2, 0, 0.0, TokenStatus.HOLDING),
        (False, 0, 1, -80.0, TokenStatus.ESCAPED),
        (False, 0, 1, -10.0, TokenStatus.EXITED),
        (False, 0, 1, -50.0, TokenStatus.EXITED),
        (False, 1, 1, 5.0, TokenStatus.PARTIAL),
        (True, 1, 0, 0.0, TokenStatus.RUGGED),
        (True, 0, 1, 10.0, TokenStatus.EXITED),
        (False, 0, 0, 0.0, TokenStatus.UNKNOWN),
    ],
)
def test_classify_token_status(is_rugged, open_count, closed_count, pnl, expected):
    assert classify_token_status(is_rugged, open_count, closed_count, pnl) is expected


def test_escape_threshold_is_configurable():
    assert classify_token_status(False, 0, 1, -10.0, escape_pnl_threshold=-5.0) is TokenStatus.ESCAPED


def mixed_history():
    return reconstruct(
        [
            tx("buy", 100, 0.1, 0, "Winner"),
            tx("sell", 60, 0.3, 10, "Winner"),
            tx("sell", 40, 0.2, 20, "Winner"),
            tx("buy", 50, 2.0, 5, "Loser"),
            tx("sell", 50, 0.4, 30, "Loser"),
            tx("buy", 10, 1.0, 40, "Holder"),
            tx("buy", 5, 1.2, 50, "Holder"),
        ]
    )


def test_token_aggregates():
    closed, open_positions = mixed_history()
    tokens = {t.token_address: t for t in aggregate_tokens(closed, open_positions)}

    winner = tokens["Winner"]
    assert winner.closed_trades == 2
    assert winner.win_rate == pytest.approx(100.0)
    assert winner.total_realized_pnl == pytest.approx(16.0)
    assert winner.status is TokenStatus.EXITED
    assert winner.trading_window_hours == pytest.approx(20 / 3600)
    assert winner.avg_roi == pytest.approx(160.0)
    assert winner.rugged_positions == 0

    loser = tokens["Loser"]
    assert loser.total_realized_pnl == pytest.approx(-80.0)
    assert loser.win_rate == pytest.approx(0.0)
    assert loser.status is TokenStatus.ESCAPED
    assert loser.avg_roi == pytest.approx(-80.0)

    holder = tokens["Holder"]
    assert holder.win_rate is None
    assert holder.avg_holding_hours is None
    assert holder.status is TokenStatus.HOLDING
    assert holder.open_positions == 1


def test_tokens_sorted_by_net_pnl():
    closed, open_positions = mixed_history()
    tokens, _ = aggregate(closed, open_positions)

    assert [t.token_address for t in tokens] == ["Winner", "Holder", "Loser"]


def test_verification_passes_and_is_repeatable():
    closed, open_positions = mixed_history()
    ledger = track(closed, open_positions)

    first = aggregate(closed, open_positions, ledger)
    second = aggregate(closed, open_positions, ledger)

    assert first == second
    verification = first[1].verification
    assert verification.simple_sum_matches
    assert verification.chronological_matches
    assert verification.all_passed
    assert verification.ledger_consistent


def test_overview_counts_rugged_open_positions_as_losses():
    closed, open_positions = mixed_history()
    states = {
        "Winner": TokenState(liquidity_usd=80_000, price=0.2),
        "Loser": TokenState(liquidity_usd=80_000, price=0.4),
        "Holder": TokenState(liquidity_usd=10.0, price=0.0001),
    }
    config = Config()
    closed = enrich(closed, states, config)
    open_positions = enrich(open_positions, states, config)
    tokens, overview = aggregate(closed, open_positions, config=config)

    assert overview.rugged_positions == 1
    assert overview.winning_trades == 2
    assert overview.losing_trades == 2
    assert overview.win_rate == pytest.approx(50.0)
    assert overview.total_confirmed_loss == pytest.approx(16.0)
    assert overview.net_pnl == pytest.approx(-64.0 - 16.0)
    assert overview.total_unrealized_pnl == pytest.approx(-16.0)
    assert overview.status_counts == {"EXITED": 1, "ESCAPED": 1, "RUGGED": 1}
    assert overview.rugged_tokens == 1
    assert overview.verification.all_passed

    holder = next(t for t in tokens if t.token_address == "Holder")
    assert holder.status is TokenStatus.RUGGED
    assert holder.total_confirmed_loss == pytest.approx(16.0)
    assert holder.rugged_positions == 1
    assert holder.avg_roi == pytest.approx(-100.0)


def test_volume_metrics():
    closed, open_positions = mixed_history()
    _, overview = aggregate(closed, open_positions)

    assert overview.total_buy_volume == pytest.approx(10 + 100 + 16)
    assert overview.total_sell_volume == pytest.approx(18 + 8 + 20)
    assert overview.tokens_traded == 3
    assert overview.closed_trades == 3
    assert overview.open_positions == 1


def test_break_even_trade_is_a_loss_at_every_level():
    closed, open_positions = reconstruct(
        [
            tx("buy", 10, 1.0, 0, "Flat"),
            tx("sell", 10, 1.0, 5, "Flat"),
            tx("buy", 10, 1.0, 0, "Up"),
            tx("sell", 10, 2.0, 5, "Up"),
        ]
    )
    tokens, overview = aggregate(closed, open_positions)
    flat = next(t for t in tokens if t.token_address == "Flat")

    assert flat.winning_trades == 0
    assert flat.losing_trades == 1
    assert flat.win_rate == pytest.approx(0.0)
    assert overview.winning_trades == 1
    assert overview.losing_trades == 1
    assert overview.win_rate == pytest.approx(50.0)
