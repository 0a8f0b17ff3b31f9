from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterator, Optional

import aiohttp

from wallet_auditor.config import Config
from wallet_auditor.models import Candle, Swap, TokenState, Transaction
from wallet_auditor.parsing import (
    parse_candles,
    parse_swaps,
    parse_time_ms,
    parse_token_state,
    parse_transactions,
)


log = logging.getLogger("wallet_auditor.client")

CHAIN_IDS = {"eth": "1", "sol": "501", "bsc": "56", "base": "8453", "arb": "42161"}
SWAP_PLATFORMS = {
    "eth": "ethereum",
    "1": "ethereum",
    "sol": "solana",
    "501": "solana",
    "bsc": "bsc",
    "56": "bsc",
    "base": "base",
    "8453": "base",
    "arb": "arbitrum",
    "42161": "arbitrum",
}
BROWSER_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36",
}


@dataclass
class RetryPolicy:
    attempts: int = 3
    initial_backoff_seconds: float = 1.0
    multiplier: float = 2.0
    max_backoff_seconds: float = 5.0

    @classmethod
    def from_config(cls, config: Config) -> "RetryPolicy":
        return cls(attempts=max(1, config.api_retries))

    def delays(self) -> Iterator[float]:
        """Sleep before each retry; yields ``attempts - 1`` values."""
        backoff = self.initial_backoff_seconds
        for _ in range(max(1, self.attempts) - 1):
            yield min(backoff, self.max_backoff_seconds)
            backoff *= self.multiplier


def chain_id(chain: str) -> str:
    return CHAIN_IDS.get(chain.lower(), chain)


def _unwrap(payload: Any) -> Any:
    if isinstance(payload, dict) and "data" in payload and payload.get("code") in (0, "0", None):
        return payload["data"]
    return payload


class MarketDataClient:
    def __init__(self, config: Config, retry_policy: Optional[RetryPolicy] = None):
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self._session: aiohttp.ClientSession | None = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.api_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout, headers=BROWSER_HEADERS)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def get_json(self, url: str, params: dict[str, Any]) -> Any:
        delays = self.retry_policy.delays()

        while True:
            try:
                session = await self._ensure_session()
                async with session.get(url, params=params) as resp:
                    if resp.status == 429:
                        raise aiohttp.ClientResponseError(
                            request_info=resp.request_info,
                            history=resp.history,
                            status=resp.status,
                            message="rate limited",
                            headers=resp.headers,
                        )
                    resp.raise_for_status()
                    return await resp.json(content_type=None)
            except aiohttp.ClientResponseError as exc:
                if exc.status != 429:
                    raise
                delay = next(delays, None)
                if delay is None:
                    raise
                log.info("Rate limited on %s, retrying in %.1fs", url, delay)
                await asyncio.sleep(delay)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                delay = next(delays, None)
                if delay is None:
                    raise
                log.info("Request to %s failed (%s), retrying in %.1fs", url, exc, delay)
                await asyncio.sleep(delay)

    async def fetch_trade_history(
        self,
        wallet: str,
        chain: str,
        start_ms: int,
        end_ms: int,
    ) -> list[Transaction]:
        url = f"{self.config.okx_base_url.rstrip('/')}/priapi/v1/dx/market/v2/pnl/wallet-profile/trade-history"
        rows: list[dict[str, Any]] = []
        cursor: Optional[str] = None

        for _ in range(self.config.max_pages):
            params: dict[str, Any] = {
                "walletAddress": wallet,
                "chainId": chain_id(chain),
                "pageSize": "100",
                "tradeType": "1,2",
                "filterRisk": "false",
                "t": end_ms,
            }
            if cursor:
                params["cursor"] = cursor

            data = _unwrap(await self.get_json(url, params))
            batch = data.get("rows") if isinstance(data, dict) else None
            if not batch:
                break

            # Rows without a block time must not end pagination early.
            times = [
                ts for ts in (parse_time_ms(r.get("blockTime")) for r in batch if isinstance(r, dict))
                if ts > 0
            ]
            rows.extend(
                r for r in batch
                if isinstance(r, dict) and start_ms <= parse_time_ms(r.get("blockTime")) <= end_ms
            )
            if times and min(times) < start_ms:
                break
            if not data.get("hasNext"):
                break
            cursor = data.get("cursor")
            await asyncio.sleep(self.config.api_delay_seconds)

        log.info("Fetched %d trade rows for %s on %s", len(rows), wallet[:10], chain)
        return parse_transactions(rows)

    async def fetch_token_state(self, token_address: str, chain: str) -> Optional[TokenState]:
        url = f"{self.config.okx_base_url.rstrip('/')}/priapi/v1/dx/market/v2/token/overview"
        data = await self.get_json(
            url,
            {"tokenContractAddress": token_address, "chainId": chain_id(chain)},
        )
        return parse_token_state(_unwrap(data))

    async def fetch_swaps(
        self,
        token_address: str,
        chain: str,
        start_ms: int,
        end_ms: int,
    ) -> list[Swap]:
        url = f"{self.config.swaps_base_url.rstrip('/')}/dex/v1/swap/list"
        platform = SWAP_PLATFORMS.get(chain.lower(), chain)
        rows: list[dict[str, Any]] = []
        last_id: Optional[str] = None

        for _ in range(self.config.max_pages):
            params: dict[str, Any] = {
                "address": token_address,
                "platform": platform,
                "startTime": start_ms,
                "endTime": end_ms,
                "limit": 100,
                "sortBy": "ts",
                "sortType": "asc",
            }
            if last_id:
                params["lastId"] = last_id

            data = _unwrap(await self.get_json(url, params))
            batch = data.get("swaps") if isinstance(data, dict) else None
            if not batch:
                break
            rows.extend(batch)
            last_id = data.get("lastId")
            if len(batch) < 100 or not last_id:
                break
            await asyncio.sleep(self.config.api_delay_seconds)

        return parse_swaps(rows)

    async def fetch_candles(
        self,
        token_address: str,
        chain: str,
        after_ms: int,
        bar: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Candle]:
        url = f"{self.config.okx_base_url.rstrip('/')}/priapi/v5/dex/token/market/dex-token-hlc-candles"
        data = await self.get_json(
            url,
            {
                "chainId": chain_id(chain),
                "address": token_address,
                "after": after_ms,
                "bar": bar or self.config.candle_bar,
                "limit": limit or self.config.candle_limit,
            },
        )
        return parse_candles(_unwrap(data))
