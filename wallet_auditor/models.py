from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional, Union


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class RugType(str, Enum):
    HARD = "hard"
    SOFT = "soft"
    NONE = "none"


class LiquidityStatus(str, Enum):
    OK = "ok"
    WARNING = "warning"
    LOW = "low"
    DRAINED = "drained"
    UNKNOWN = "unknown"


class PositionStatus(str, Enum):
    HOLDING = "HOLDING"
    RUGGED = "RUGGED"


class TokenStatus(str, Enum):
    RUGGED = "RUGGED"
    HOLDING = "HOLDING"
    EXITED = "EXITED"
    ESCAPED = "ESCAPED"
    PARTIAL = "PARTIAL"
    UNKNOWN = "UNKNOWN"


@dataclass(slots=True, frozen=True)
class Transaction:
    token_address: str
    side: Side
    amount: Optional[float]
    usd_value: Optional[float]
    price: Optional[float]
    timestamp: int
    tx_hash: str = ""
    block_height: int = 0
    token_symbol: str = ""


@dataclass(slots=True)
class Lot:
    remaining_amount: float
    unit_price: float
    entry_timestamp: int
    source_tx_hash: str
    block_height: int = 0
    original_amount: float = 0.0


@dataclass(slots=True)
class RugStatus:
    is_rug: bool = False
    rug_type: RugType = RugType.NONE
    rug_reasons: list[str] = field(default_factory=list)
    confirmed_loss_usd: Optional[float] = None
    current_liquidity_usd: Optional[float] = None
    can_exit: Optional[bool] = None
    liquidity_status: LiquidityStatus = LiquidityStatus.UNKNOWN
    position_status: Optional[PositionStatus] = None
    current_price: Optional[float] = None
    current_value_usd: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    rug_warning: Optional[str] = None


@dataclass(slots=True)
class CopyTradeResult:
    copy_entry_price: Optional[float] = None
    possible_gain_1h: Optional[float] = None
    possible_gain_full: Optional[float] = None
    possible_loss_1h: Optional[float] = None
    possible_loss_full: Optional[float] = None
    time_to_25_percent: Optional[int] = None
    time_to_50_percent: Optional[int] = None
    reached_25_percent_at: Optional[int] = None
    reached_50_percent_at: Optional[int] = None
    match_method: Optional[str] = None
    original_swap_price: Optional[float] = None
    next_swap_price: Optional[float] = None
    unavailable_reason: Optional[str] = None

    @classmethod
    def unavailable(cls, reason: str) -> "CopyTradeResult":
        return cls(unavailable_reason=reason)

    @property
    def is_available(self) -> bool:
        return self.copy_entry_price is not None


@dataclass(slots=True)
class HoldExcursion:
    """Best price seen between entry and exit, from candle highs."""

    max_price_during_hold: float
    peak_timestamp: int
    time_to_peak_hours: float
    max_potential_roi: float
    capture_efficiency: Optional[float] = None
    early_exit: bool = False


@dataclass(slots=True)
class ClosedTrade:
    token_address: str
    amount: float
    entry_price: float
    exit_price: float
    entry_timestamp: int
    exit_timestamp: int
    entry_value_usd: float
    exit_value_usd: float
    realized_pnl: float
    realized_roi: float
    holding_time_seconds: float
    token_symbol: str = ""
    entry_tx_hash: str = ""
    exit_tx_hash: str = ""
    entry_block_height: int = 0
    exit_block_height: int = 0
    rug: Optional[RugStatus] = None
    copy_trade: Optional[CopyTradeResult] = None
    excursion: Optional[HoldExcursion] = None
    issues: list[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return False

    @property
    def is_rug_now(self) -> Optional[bool]:
        return self.rug.is_rug if self.rug is not None else None


@dataclass(slots=True)
class OpenPosition:
    token_address: str
    amount: float
    entry_price: float
    entry_timestamp: int
    entry_value_usd: float
    token_symbol: str = ""
    last_entry_timestamp: int = 0
    lot_count: int = 1
    entry_tx_hash: str = ""
    entry_block_height: int = 0
    entry_lot_price: Optional[float] = None
    rug: Optional[RugStatus] = None
    copy_trade: Optional[CopyTradeResult] = None
    issues: list[str] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return True

    @property
    def is_rugged(self) -> bool:
        return bool(self.rug and self.rug.is_rug)

    @property
    def current_value_usd(self) -> Optional[float]:
        return self.rug.current_value_usd if self.rug is not None else None

    @property
    def unrealized_pnl(self) -> Optional[float]:
        return self.rug.unrealized_pnl if self.rug is not None else None

    @property
    def confirmed_loss_usd(self) -> Optional[float]:
        return self.rug.confirmed_loss_usd if self.rug is not None else None


Trade = Union[ClosedTrade, OpenPosition]


@dataclass(slots=True)
class UnmatchedSell:
    token_address: str
    amount: float
    price: float
    timestamp: int
    tx_hash: str = ""


@dataclass(slots=True)
class Reconstruction:
    closed: list[ClosedTrade] = field(default_factory=list)
    open: list[OpenPosition] = field(default_factory=list)
    unmatched_sells: list[UnmatchedSell] = field(default_factory=list)
    excluded_count: int = 0
    ignored_count: int = 0
    exclusion_reasons: dict[str, int] = field(default_factory=dict)

    def __iter__(self) -> Iterator[Any]:
        yield self.closed
        yield self.open

    @property
    def unmatched_sell_amount(self) -> float:
        return float(sum(s.amount for s in self.unmatched_sells))


@dataclass(slots=True)
class CapitalSnapshot:
    timestamp: int
    kind: str
    token_address: str
    capital_deployed_delta: float
    running_deployed: float
    running_realized_pnl: float
    clamped: bool = False
    trade_index: Optional[int] = None


@dataclass(slots=True)
class CapitalLedger:
    snapshots: list[CapitalSnapshot] = field(default_factory=list)
    starting_capital: float = 0.0
    peak_deployed: float = 0.0
    final_capital: float = 0.0
    total_invested: float = 0.0
    total_returned: float = 0.0
    net_realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    open_mark_value: float = 0.0
    total_gains: float = 0.0
    total_losses: float = 0.0
    wallet_growth_roi: Optional[float] = None
    trading_performance_roi: Optional[float] = None
    consistency_issues: list[str] = field(default_factory=list)
    inconsistent_trade_indexes: list[int] = field(default_factory=list)


@dataclass(slots=True)
class TokenState:
    liquidity_usd: Optional[float] = None
    price: Optional[float] = None
    dev_rug_history_count: int = 0
    holder_concentration: Optional[float] = None
    recent_trade_count: Optional[int] = None


@dataclass(slots=True)
class TokenAggregate:
    token_address: str
    token_symbol: str = ""
    total_trades: int = 0
    closed_trades: int = 0
    open_positions: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_invested: float = 0.0
    total_returned: float = 0.0
    total_realized_pnl: float = 0.0
    total_confirmed_loss: float = 0.0
    net_pnl: float = 0.0
    avg_roi: Optional[float] = None
    win_rate: Optional[float] = None
    rugged_positions: int = 0
    is_held: bool = False
    is_rugged: bool = False
    traded_rug_token: bool = False
    rug_flags: list[str] = field(default_factory=list)
    first_trade_timestamp: Optional[int] = None
    last_trade_timestamp: Optional[int] = None
    trading_window_hours: float = 0.0
    avg_holding_hours: Optional[float] = None
    status: TokenStatus = TokenStatus.UNKNOWN


@dataclass(slots=True)
class Verification:
    simple_sum_matches: bool
    simple_sum_delta: float
    chronological_matches: bool
    chronological_delta: float
    ledger_consistent: bool
    tolerance: float

    @property
    def all_passed(self) -> bool:
        return self.simple_sum_matches and self.chronological_matches and self.ledger_consistent


@dataclass(slots=True)
class OverviewAggregate:
    total_trades: int = 0
    closed_trades: int = 0
    open_positions: int = 0
    rugged_positions: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: Optional[float] = None
    total_buy_volume: float = 0.0
    total_sell_volume: float = 0.0
    volume_ratio: Optional[float] = None
    starting_capital: float = 0.0
    peak_deployed: float = 0.0
    final_capital: float = 0.0
    wallet_growth_roi: Optional[float] = None
    trading_performance_roi: Optional[float] = None
    total_gains: float = 0.0
    total_losses: float = 0.0
    total_realized_pnl: float = 0.0
    total_confirmed_loss: float = 0.0
    total_unrealized_pnl: float = 0.0
    net_pnl: float = 0.0
    avg_roi: Optional[float] = None
    tokens_traded: int = 0
    rugged_tokens: int = 0
    traded_rug_tokens: int = 0
    status_counts: dict[str, int] = field(default_factory=dict)
    verification: Optional[Verification] = None


@dataclass(slots=True)
class SkillMetrics:
    trades_scored: int = 0
    win_rate: Optional[float] = None
    avg_realized_roi: Optional[float] = None
    median_realized_roi: Optional[float] = None
    median_max_potential_roi: Optional[float] = None
    avg_holding_hours_winners: Optional[float] = None
    avg_holding_hours_losers: Optional[float] = None
    entry_skill_score: Optional[int] = None
    exit_skill_score: Optional[int] = None
    overall_skill_score: Optional[int] = None
    copy_trade_rating: str = "N/A"
    token_concentration_index: Optional[int] = None
    top_token_pnl_percent: Optional[float] = None
    concentration_rating: str = "N/A"


@dataclass(slots=True)
class Swap:
    ts: int
    h: int = 0
    tx: str = ""
    ma: str = ""
    t0a: str = ""
    t1a: str = ""
    t0pu: Optional[float] = None
    t1pu: Optional[float] = None

    def price_for(self, token_address: str) -> Optional[float]:
        token = token_address.lower()
        if self.t0a.lower() == token:
            return self.t0pu
        if self.t1a.lower() == token:
            return self.t1pu
        return None


@dataclass(slots=True)
class Candle:
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass(slots=True)
class WalletReport:
    wallet_address: str
    chain: str
    closed_trades: list[ClosedTrade]
    open_positions: list[OpenPosition]
    tokens: list[TokenAggregate]
    overview: OverviewAggregate
    ledger: CapitalLedger
    data_quality: dict[str, Any] = field(default_factory=dict)
    skill: Optional[SkillMetrics] = None

    def to_dict(self, include_ledger: bool = False) -> dict[str, Any]:
        overview = asdict(self.overview)
        if self.overview.verification is not None:
            overview["verification"]["all_passed"] = self.overview.verification.all_passed
        out: dict[str, Any] = {
            "wallet_address": self.wallet_address,
            "chain": self.chain,
            "closed_trades": [asdict(t) for t in self.closed_trades],
            "open_positions": [asdict(p) for p in self.open_positions],
            "tokens": [asdict(t) for t in self.tokens],
            "overview": overview,
            "data_quality": self.data_quality,
            "skill": asdict(self.skill) if self.skill is not None else None,
        }
        if include_ledger:
            out["ledger"] = asdict(self.ledger)
        return _plain(out)
