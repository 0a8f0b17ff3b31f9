from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

if __package__ in {None, ""}:
    sys.path.append(os.path.dirname(os.path.dirname(__file__)))

from wallet_auditor.client import MarketDataClient
from wallet_auditor.config import Config
from wallet_auditor.errors import WalletAuditorError
from wallet_auditor.models import WalletReport
from wallet_auditor.parsing import (
    parse_candles,
    parse_swaps,
    parse_token_state,
    parse_transactions,
)
from wallet_auditor.pipeline import analyze_wallet, build_report


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("wallet_auditor.main")


def report_from_file(path: str, wallet: str, chain: str, config: Config) -> WalletReport:
    """Build a report from a JSON snapshot instead of the live APIs.

    The file holds ``transactions`` plus optional ``token_states``, ``swaps``
    and ``candles`` maps keyed by token address.
    """
    with open(path, "r", encoding="utf-8") as fh:
        payload = json.load(fh)

    if isinstance(payload, list):
        payload = {"transactions": payload}

    token_states = None
    if "token_states" in payload:
        token_states = {
            addr: parse_token_state(raw) for addr, raw in payload["token_states"].items()
        }
    swap_feeds = None
    if "swaps" in payload:
        swap_feeds = {addr: parse_swaps(rows) for addr, rows in payload["swaps"].items()}
    candle_feeds = None
    if "candles" in payload:
        candle_feeds = {addr: parse_candles(rows) for addr, rows in payload["candles"].items()}

    return build_report(
        parse_transactions(payload.get("transactions")),
        token_states=token_states,
        swap_feeds=swap_feeds,
        candle_feeds=candle_feeds,
        wallet_address=wallet or payload.get("wallet_address", ""),
        chain=chain or payload.get("chain", ""),
        config=config,
    )


async def run(args: argparse.Namespace) -> dict[str, Any]:
    config = Config.from_env()
    if args.window_days:
        config.analysis_window_days = args.window_days

    if args.input:
        report = report_from_file(args.input, args.wallet, args.chain, config)
    else:
        client = MarketDataClient(config)
        try:
            report = await analyze_wallet(client, args.wallet, args.chain, config)
        finally:
            await client.close()

    overview = report.overview
    log.info(
        "Report ready | trades=%d open=%d tokens=%d realized=%.2f verified=%s",
        overview.total_trades,
        overview.open_positions,
        overview.tokens_traded,
        overview.total_realized_pnl,
        overview.verification.all_passed if overview.verification else None,
    )
    return report.to_dict(include_ledger=args.include_ledger)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Wallet trade auditor")
    parser.add_argument("--wallet", type=str, default="", help="Wallet address to audit")
    parser.add_argument("--chain", type=str, default="sol", help="Chain name or id")
    parser.add_argument("--input", type=str, default="", help="Read a JSON snapshot instead of the APIs")
    parser.add_argument("--output", type=str, default="", help="Write the report here instead of stdout")
    parser.add_argument("--window-days", type=int, default=0, help="Override the analysis window")
    parser.add_argument("--include-ledger", action="store_true", help="Include capital ledger snapshots")
    args = parser.parse_args()
    if not args.input and not args.wallet:
        parser.error("--wallet is required unless --input is given")
    return args


def main() -> None:
    args = parse_args()
    try:
        result = asyncio.run(run(args))
    except WalletAuditorError as exc:
        log.error("Audit failed: %s", exc)
        sys.exit(1)

    text = json.dumps(result, indent=2)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as fh:
            fh.write(text)
        log.info("Wrote report to %s", args.output)
    else:
        print(text)


if __name__ == "__main__":
    main()
