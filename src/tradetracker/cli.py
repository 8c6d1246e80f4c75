from __future__ import annotations

import argparse
import asyncio
import logging
import pathlib
import sys
import traceback
from typing import List, Optional

from pydantic import ValidationError

from tradetracker import __version__
from tradetracker.config import AppConfig
from tradetracker.equity import daily_pnl
from tradetracker.exceptions import HistoryFetchError, TradeTrackerException
from tradetracker.logging_setup import SORTED_LEVEL_NAMES, configure_logging
from tradetracker.metrics import account_stats, monthly_summaries
from tradetracker.models import AccountFetchStatus, FetchStatus, HistoricalCache
from tradetracker.service import HistoryService
from tradetracker.utils import day_key, format_ms, parse_time_arg

log = logging.getLogger(__name__)

BACKFILL_NOTE = (
    "NOTE: equity before the first live snapshot is an estimate rebuilt from realized P&L only; "
    "deposits, withdrawals and unrealized swings are not reflected."
)


def setup_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tradetracker", description="Exchange account history tracker"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    config_section = parser.add_argument_group(title="Configuration Paths")
    config_section.add_argument(
        "-c",
        "--config",
        "--config-file",
        type=pathlib.Path,
        dest="config_files",
        default=[],
        action="append",
        help=(
            "Path to configuration file. Can be passed multiple times, later files are "
            "merged into the previous ones, overriding the values they define."
        ),
    )
    cli_logging_params = parser.add_argument_group(
        title="Logging", description="Runtime logging configuration"
    )
    cli_logging_params.add_argument(
        "--log-level",
        choices=SORTED_LEVEL_NAMES,
        default=None,
        help="CLI logging level. Default: the configured level (info)",
    )
    cli_logging_params.add_argument(
        "--log-file", type=pathlib.Path, default=None, help="Path to logs file"
    )

    subparsers = parser.add_subparsers(title="tradetracker commands", dest="subparser")

    fetch_parser = subparsers.add_parser("fetch", help="Fetch one account's history")
    fetch_parser.add_argument("account_id", help="Account id as defined in the configuration")
    fetch_parser.add_argument(
        "--force", action="store_true", help="Ignore the cache freshness and refetch"
    )
    fetch_parser.add_argument(
        "--quiet", action="store_true", help="Do not print per-chunk progress"
    )

    batch_parser = subparsers.add_parser("batch", help="Fetch history for several accounts")
    batch_parser.add_argument(
        "account_ids", nargs="*", help="Account ids to fetch. Default: every configured account"
    )

    show_parser = subparsers.add_parser("show", help="Show an account's cached history")
    show_parser.add_argument("account_id")
    show_parser.add_argument(
        "--since", type=str, default=None, help="Only list daily P&L from this time (ms or ISO)"
    )

    subparsers.add_parser("refresh", help="Poll live state and merge it with cached history")
    subparsers.add_parser("backfill", help="Rebuild past equity from realized P&L")

    delete_parser = subparsers.add_parser("delete", help="Delete an account's stored data")
    delete_parser.add_argument("account_id")
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_fetch(service: HistoryService, args: argparse.Namespace) -> int:
    account = service.config.get_account(args.account_id)
    unsubscribe = None
    if not args.quiet:

        def on_progress(event) -> None:
            if event.account_id != account.id:
                return
            print(
                f"\r{account.display_name}: chunk {event.chunk_index}/{event.total_chunks} "
                f"({event.percentage}%) records={event.records_retrieved}",
                end="",
                flush=True,
            )

        unsubscribe = service.on_historical_progress(on_progress)
    try:
        cache = await service.fetch_complete_historical_data(account, force_refresh=args.force)
    except HistoryFetchError as exc:
        if exc.partial is not None:
            print(f"\npartial history saved: {exc.partial.total_records} records")
        raise
    finally:
        if unsubscribe is not None:
            unsubscribe()
            print()
    _print_summary(cache)
    return 0


async def _cmd_batch(service: HistoryService, args: argparse.Namespace) -> int:
    account_ids: List[str] = args.account_ids or list(service.accounts)

    def on_status(status: AccountFetchStatus) -> None:
        line = (
            f"{status.name:<24} {status.exchange:<10} "
            f"{status.status.value:<9} {status.progress:>3}%"
        )
        if status.message:
            line += f"  {status.message}"
        print(line)

    batch = service.start_batch_historical_fetch(account_ids, on_status)
    try:
        statuses = await batch.task
    except asyncio.CancelledError:
        batch.cancel()
        raise
    failed = [status for status in statuses.values() if status.status is FetchStatus.ERROR]
    print(f"batch finished: {len(statuses) - len(failed)}/{len(statuses)} complete")
    return 1 if failed else 0


async def _cmd_show(service: HistoryService, args: argparse.Namespace) -> int:
    cache = await service.get_cached_historical_data_async(args.account_id)
    if cache is None:
        print(f"no cached history for {args.account_id}")
        return 1
    _print_summary(cache)
    _print_stats(cache)
    _print_monthly(cache)
    since = parse_time_arg(args.since)
    records = [rec for rec in cache.closed_pnl if since is None or rec.updated_time >= since]
    totals = daily_pnl(records)
    if totals:
        print("\ndaily realized pnl:")
        for day in sorted(totals):
            print(f"  {day_key(day)}  {totals[day]:>14.4f}")
    return 0


async def _cmd_refresh(service: HistoryService, args: argparse.Namespace) -> int:
    views = await service.refresh()
    for view in views:
        print(
            f"{view.account_id:<24} equity={view.total_equity:>14.4f} "
            f"upnl={view.unrealized_pnl:>10.4f} positions={len(view.positions):<3} "
            f"history={view.history_status.value}"
        )
    return 0


async def _cmd_backfill(service: HistoryService, args: argparse.Namespace) -> int:
    # live equity is the anchor of the reconstruction
    await service.refresh()
    snapshots = await service.backfill_equity_history()
    print(BACKFILL_NOTE)
    for snapshot in snapshots:
        print(f"  {format_ms(snapshot.timestamp)}  {snapshot.total_equity:>14.4f}")
    return 0


async def _cmd_delete(service: HistoryService, args: argparse.Namespace) -> int:
    await service.delete_account_data(args.account_id)
    print(f"deleted stored data for {args.account_id}")
    return 0


COMMANDS = {
    "fetch": _cmd_fetch,
    "batch": _cmd_batch,
    "show": _cmd_show,
    "refresh": _cmd_refresh,
    "backfill": _cmd_backfill,
    "delete": _cmd_delete,
}


def _print_summary(cache: HistoricalCache) -> None:
    data_range = cache.data_range
    metrics = cache.performance_metrics
    profit_factor = "inf" if metrics.profit_factor is None else f"{metrics.profit_factor:.3f}"
    rows = [
        ("account", cache.account_id),
        ("complete", str(cache.is_complete)),
        ("range", f"{format_ms(data_range.earliest)} -> {format_ms(data_range.latest)}"),
        ("days", str(data_range.total_days)),
        ("last updated", format_ms(cache.last_updated)),
        ("closed pnl", str(len(cache.closed_pnl))),
        ("trades", str(len(cache.trades))),
        ("deposits", str(len(cache.deposits))),
        ("withdrawals", str(len(cache.withdrawals))),
        ("total pnl", f"{metrics.total_pnl:.4f}"),
        ("win rate", f"{metrics.win_rate:.2f}%"),
        ("profit factor", profit_factor),
        ("max drawdown", f"{metrics.max_drawdown:.4f}"),
        ("sharpe", f"{metrics.sharpe_ratio:.4f}"),
        ("calmar", f"{metrics.calmar_ratio:.4f}"),
    ]
    width = max(len(name) for name, _ in rows)
    for name, value in rows:
        print(f"{name:<{width}}  {value}")


def _print_stats(cache: HistoricalCache) -> None:
    stats = account_stats(cache)
    print(
        f"\nstored: {stats.total_months} months, {stats.total_trades} trades, "
        f"{stats.total_pnl_records} pnl records, {stats.total_transfers} transfers, "
        f"{stats.data_size} bytes"
    )
    if stats.oldest_data is not None:
        print(f"data: {format_ms(stats.oldest_data)} -> {format_ms(stats.newest_data)}")


def _print_monthly(cache: HistoricalCache) -> None:
    summaries = monthly_summaries(cache)
    if not summaries:
        return
    print("\nmonthly performance:")
    print(f"  {'month':<8} {'trades':>6} {'pnl':>14} {'volume':>16} {'win rate':>9} {'pf':>7}")
    for summary in summaries:
        metrics = summary.metrics
        profit_factor = "inf" if metrics.profit_factor is None else f"{metrics.profit_factor:.3f}"
        print(
            f"  {summary.month:<8} {metrics.total_trades:>6} {metrics.total_pnl:>14.4f} "
            f"{metrics.total_volume:>16.4f} {metrics.win_rate:>8.2f}% {profit_factor:>7}"
        )


async def _run(config: AppConfig, args: argparse.Namespace) -> int:
    service = HistoryService(config)
    try:
        return await COMMANDS[args.subparser](service, args)
    finally:
        await service.close()


def main(argv: Optional[List[str]] = None) -> None:
    parser = setup_parser()
    args = parser.parse_args(argv)
    if args.subparser is None:
        parser.print_help()
        parser.exit(status=2)

    for config_file in list(args.config_files):
        if not config_file.exists():
            parser.exit(status=1, message=f"Config file {config_file} does not exist\n")

    try:
        config = AppConfig.parse_files(*args.config_files)
    except ValidationError as exc:
        parser.exit(status=1, message=f"Found some errors in the configuration:\n\n{exc}\n")
    except Exception:
        parser.exit(
            status=1, message=f"Failed to load the configuration:\n{traceback.format_exc()}"
        )

    configure_logging(
        debug=args.log_level or config.logging.level,
        log_file=args.log_file or config.logging.log_file,
        rotation=config.logging.rotation,
    )
    if args.config_files:
        log.info("Configuration loaded from:")
        for config_file in args.config_files:
            log.info("  - %s", config_file)

    try:
        status = asyncio.run(_run(config, args))
    except KeyboardInterrupt:
        log.info("tradetracker interrupted by user")
        status = 130
    except KeyError as exc:
        parser.exit(status=1, message=f"Unknown account: {exc}\n")
    except ValueError as exc:
        parser.exit(status=1, message=f"{exc}\n")
    except TradeTrackerException as exc:
        parser.exit(status=1, message=f"{exc.__class__.__name__}: {exc}\n")
    sys.exit(status)


if __name__ == "__main__":
    main()
