"""
Command line entry point: watch live updates for a few symbols.

    python -m market_client watch BTCUSDT ETHUSDT --email me@example.com --password ...

Without --email/--password the persisted credential is reused.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from shared.config import get_config
from shared.errors import ClientLayerException
from shared.retry import RetryError
from shared.logging import configure_logging

from .app.main import MarketDataClient


async def watch(
    *,
    symbols: Sequence[str],
    email: Optional[str],
    password: Optional[str],
    duration: Optional[float],
    overrides: dict,
) -> int:
    """Subscribe to ``symbols`` and print every update until stopped."""
    config = get_config(**overrides)
    client = MarketDataClient(config)
    received = 0

    def printer(symbol: str):
        def notify(payload) -> None:
            nonlocal received
            received += 1
            print(json.dumps({"symbol": symbol, "data": payload}), flush=True)
        return notify

    async with client:
        if email and password:
            await client.login(email, password)

        for symbol in symbols:
            client.subscribe(symbol, printer(symbol.upper()))

        await client.connect()
        print(f"[watch] connected, streaming {', '.join(s.upper() for s in symbols)}", file=sys.stderr)

        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)

    return received


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="market_client", description="Real-time market data client.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser("watch", help="Stream updates for symbols")
    watch_parser.add_argument("symbols", nargs="+", help="Instrument symbols, e.g. BTCUSDT")
    watch_parser.add_argument("--email", default=None, help="Log in with this account first")
    watch_parser.add_argument("--password", default=None, help="Password for --email")
    watch_parser.add_argument("--api-url", default=None, help="REST backend base URL")
    watch_parser.add_argument("--ws-url", default=None, help="Streaming backend URL")
    watch_parser.add_argument("--credential-file", type=Path, default=None, help="Persisted credential path")
    watch_parser.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    watch_parser.add_argument("--log-level", default="warning", help="Log level")
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict:
    overrides = {}
    if args.api_url:
        overrides["api_base_url"] = args.api_url
    if args.ws_url:
        overrides["ws_url"] = args.ws_url
    if args.credential_file:
        overrides["credential_file"] = args.credential_file
    return overrides


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging("market_client", args.log_level)

    try:
        asyncio.run(
            watch(
                symbols=args.symbols,
                email=args.email,
                password=args.password,
                duration=args.duration,
                overrides=_overrides(args),
            )
        )
    except KeyboardInterrupt:
        return 130
    except ClientLayerException as exc:
        print(f"[watch] failed: {exc.code}: {exc.message}", file=sys.stderr)
        return 1
    except RetryError as exc:
        print(f"[watch] failed after {exc.attempts} attempts: {exc.last_exception}", file=sys.stderr)
        return 1

    return 0
