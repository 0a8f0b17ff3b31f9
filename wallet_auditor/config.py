from __future__ import annotations

import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class Config:
    # Analysis window
    analysis_window_days: int = 7

    # Rug heuristics
    rug_liquidity_usd: float = 100.0          # below this, liquidity is drained
    low_liquidity_usd: float = 1_000.0
    warning_liquidity_usd: float = 10_000.0
    price_collapse_ratio: float = 0.05        # current / reference price
    max_holder_concentration: float = 0.50
    weak_signals_for_rug: int = 3

    # Token status
    escape_pnl_threshold: float = -50.0

    # Verification
    verification_rel_tol: float = 1e-6
    verification_abs_tol: float = 1e-6

    # Copy-trade simulation
    copy_match_tolerance_ms: int = 60_000
    first_window_ms: int = 3_600_000
    swap_lookback_ms: int = 3_600_000
    swap_lookahead_ms: int = 7_200_000
    candle_bar: str = "1H"
    candle_limit: int = 1000

    # Orchestration
    max_concurrency: int = 4
    per_token_timeout_seconds: float = 30.0
    cache_ttl_seconds: float = 300.0

    # API
    okx_base_url: str = "https://web3.okx.com"
    swaps_base_url: str = "https://dapi.coinmarketcap.com"
    api_timeout_seconds: int = 15
    api_retries: int = 3
    api_delay_seconds: float = 0.2
    max_pages: int = 10

    @classmethod
    def from_env(cls) -> "Config":
        defaults = cls()
        return cls(
            analysis_window_days=_env_int(
                "WALLET_AUDITOR_WINDOW_DAYS", defaults.analysis_window_days
            ),
            rug_liquidity_usd=_env_float(
                "WALLET_AUDITOR_RUG_LIQUIDITY_USD", defaults.rug_liquidity_usd
            ),
            low_liquidity_usd=_env_float(
                "WALLET_AUDITOR_LOW_LIQUIDITY_USD", defaults.low_liquidity_usd
            ),
            escape_pnl_threshold=_env_float(
                "WALLET_AUDITOR_ESCAPE_PNL_THRESHOLD", defaults.escape_pnl_threshold
            ),
            max_concurrency=_env_int("WALLET_AUDITOR_MAX_CONCURRENCY", defaults.max_concurrency),
            per_token_timeout_seconds=_env_float(
                "WALLET_AUDITOR_TOKEN_TIMEOUT", defaults.per_token_timeout_seconds
            ),
            cache_ttl_seconds=_env_float("WALLET_AUDITOR_CACHE_TTL", defaults.cache_ttl_seconds),
            okx_base_url=os.getenv("WALLET_AUDITOR_OKX_URL", defaults.okx_base_url),
            swaps_base_url=os.getenv("WALLET_AUDITOR_SWAPS_URL", defaults.swaps_base_url),
            api_retries=_env_int("WALLET_AUDITOR_API_RETRIES", defaults.api_retries),
        )
