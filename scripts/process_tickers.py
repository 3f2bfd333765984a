#!/usr/bin/env python3
"""
Ticker Processing CLI

Drives a ticker processing namespace from the command line: register
tickers, run bounded processing waves, inspect status and reset state.

Usage:
    python scripts/process_tickers.py init PETR4 VALE3 ITUB4 --priority 1
    python scripts/process_tickers.py run --limit 50 --exclude-errors
    python scripts/process_tickers.py run PETR4 VALE3
    python scripts/process_tickers.py summary
    python scripts/process_tickers.py reset --all
    python scripts/process_tickers.py remove PETR4

Every command accepts --process-type to select the namespace
(defaults to PROCESS_TYPE from the environment).
"""
import asyncio
import sys
import argparse
import logging
from datetime import timedelta
from pathlib import Path

# Add parent directory to path to import tickerstate modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from tickerstate.core.config import settings as app_settings
from tickerstate.core.database import create_engine, create_session_factory, init_db
from tickerstate.core.exceptions import StoreUnavailable
from tickerstate.models.ticker import utcnow
from tickerstate.providers.brapi import BrapiProvider
from tickerstate.services import IngestionPipeline, SelectionOptions


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage ticker processing state")
    parser.add_argument("--process-type", default=None, help="Processing namespace")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    
    commands = parser.add_subparsers(dest="command", required=True)
    
    init = commands.add_parser("init", help="Register tickers for processing")
    init.add_argument("tickers", nargs="+")
    init.add_argument("--priority", type=int, default=0, help="0 normal, 1 high, 2 urgent")
    
    run = commands.add_parser("run", help="Process eligible (or the given) tickers")
    run.add_argument("tickers", nargs="*")
    run.add_argument("--limit", type=int, default=None, help="Maximum tickers to attempt")
    run.add_argument("--exclude-errors", action="store_true", help="Do not retry tickers in ERROR")
    run.add_argument("--max-errors", type=int, default=app_settings.max_error_count,
                     help="Skip ERROR tickers that failed more often than this")
    run.add_argument("--priority-only", action="store_true", help="Only tickers with priority > 0")
    run.add_argument("--historical-only", action="store_true", help="Only tickers missing historical data")
    run.add_argument("--ttm-only", action="store_true", help="Only tickers missing TTM data")
    run.add_argument("--max-minutes", type=float, default=None, help="Stop issuing waves after this long")
    run.add_argument("--concurrency", type=int, default=None, help="Tickers per wave")
    
    commands.add_parser("summary", help="Show status counts")
    
    reset = commands.add_parser("reset", help="Return tickers to PENDING")
    reset.add_argument("tickers", nargs="*")
    reset.add_argument("--all", action="store_true", help="Reset every ticker in the namespace")
    
    remove = commands.add_parser("remove", help="Delete tickers from the namespace")
    remove.add_argument("tickers", nargs="+")
    
    return parser


async def execute(args: argparse.Namespace) -> int:
    engine = create_engine(args.database_url)
    provider = BrapiProvider()
    pipeline = IngestionPipeline(
        create_session_factory(engine),
        provider=provider,
        process_type=args.process_type,
        concurrency=getattr(args, "concurrency", None)
    )
    
    try:
        await init_db(engine)
        
        if args.command == "init":
            result = await pipeline.initialize(args.tickers, priority=args.priority)
            print(f"✅ {result['created']} created, {result['updated']} updated")
        
        elif args.command == "run":
            options = SelectionOptions(
                exclude_errors=args.exclude_errors,
                max_error_count=args.max_errors,
                priority_only=args.priority_only,
                historical_only=args.historical_only,
                ttm_only=args.ttm_only
            )
            deadline = None
            if args.max_minutes:
                deadline = utcnow() + timedelta(minutes=args.max_minutes)
            
            run = await pipeline.run(
                max_tickers=args.limit,
                options=options,
                deadline=deadline,
                tickers=args.tickers or None
            )
            print(f"📦 {pipeline.reporter.format_run(run)}")
            print(f"📊 {pipeline.reporter.format(await pipeline.get_summary())}")
        
        elif args.command == "summary":
            summary = await pipeline.get_summary()
            print(f"📊 {pipeline.reporter.format(summary)}")
        
        elif args.command == "reset":
            if not args.all and not args.tickers:
                print("⚠️  Pass tickers to reset or --all")
                return 2
            count = await pipeline.reset(None if args.all else args.tickers)
            print(f"🔄 {count} tickers reset")
        
        elif args.command == "remove":
            count = await pipeline.remove(args.tickers)
            print(f"🗑️  {count} tickers removed")
        
        return 0
    
    except StoreUnavailable as e:
        print(f"❌ State store unavailable: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 2
    finally:
        await pipeline.close()
        await engine.dispose()


def main():
    parser = build_parser()
    args = parser.parse_args()
    
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, app_settings.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    
    sys.exit(asyncio.run(execute(args)))


if __name__ == "__main__":
    main()
