"""
Scheduled Jobs
Daily price update and monthly report generation, runnable from cron:

    python jobs.py update-prices
    python jobs.py generate-report [--force]
"""

import argparse
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

import pandas as pd

from calculations import PriceAligner
from config import FETCH_MAX_WORKERS, FETCH_TIMEOUT_SECONDS, LOG_LEVEL, REPORT_LOOKBACK_DAYS, REPORT_STORAGE_URL
from data_fetcher import DataFetcher, collect_price_histories
from models import init_db
from performance import RISK_WINDOW, resolve_window
from reporting import (
    FAILED_COMMENTARY, ReportSummary, build_report_summary, generate_narrative, report_due,
    validate_settings,
)
from store import RecordStore
from utils import to_timestamp

logger = logging.getLogger(__name__)

# Days fetched back from today so weekends and holidays still resolve a close
PRICE_LOOKBACK_DAYS = 7


def update_prices(
    store: RecordStore,
    fetcher: DataFetcher,
    today=None,
    timeout: float = FETCH_TIMEOUT_SECONDS,
    max_workers: int = FETCH_MAX_WORKERS
) -> List[str]:
    """
    Fetch recent closes for held tickers and the benchmark, store them and
    revalue every position

    Returns:
        Tickers for which new closes were stored
    """
    today = to_timestamp(today) if today is not None else pd.Timestamp.today().normalize()
    benchmark_ticker, _ = validate_settings(store.get_settings())
    positions = store.get_positions()

    held = list(dict.fromkeys(positions['ticker']))
    pending = [t for t in held if not store.has_price(t, today)]
    if not store.has_price(benchmark_ticker, today, benchmark=True):
        pending.append(benchmark_ticker)
    pending = list(dict.fromkeys(pending))

    updated = []
    if pending:
        logger.info(f"Updating prices for {len(pending)} tickers")
        histories = collect_price_histories(
            fetcher.fetch_price_history, pending,
            today - pd.Timedelta(days=PRICE_LOOKBACK_DAYS), today,
            timeout=timeout, max_workers=max_workers
        )
        for ticker, history in histories.groupby('ticker', sort=False):
            inserted = 0
            if ticker in held:
                inserted += store.save_prices(history)
            if ticker == benchmark_ticker:
                inserted += store.save_prices(history, benchmark=True)
            if inserted:
                updated.append(ticker)
        logger.info(f"Stored new closes for {len(updated)} tickers")
    else:
        logger.info("Prices already up to date")

    start = today - pd.Timedelta(days=PRICE_LOOKBACK_DAYS)
    stored = pd.concat(
        [store.fetch_price_history(t, start, today) for t in held] or [pd.DataFrame()],
        ignore_index=True,
    )
    store.refresh_valuations(PriceAligner.latest_prices(stored, as_of=today))
    store.update_settings(last_price_update=datetime.utcnow())
    return updated


def generate_report(
    store: RecordStore,
    today=None,
    narrative: Callable[[ReportSummary], str] = generate_narrative,
    timeout: float = FETCH_TIMEOUT_SECONDS,
    max_workers: int = FETCH_MAX_WORKERS
) -> Tuple[int, ReportSummary]:
    """
    Build, narrate and persist the report for today

    Returns:
        (report id, summary)
    """
    today = to_timestamp(today) if today is not None else pd.Timestamp.today().normalize()
    settings = store.get_settings()
    benchmark_ticker, risk_free_rate = validate_settings(settings)
    positions = store.get_positions()

    start = min(today - pd.Timedelta(days=REPORT_LOOKBACK_DAYS), resolve_window(RISK_WINDOW, today)[0])
    price_histories = collect_price_histories(
        store.fetch_price_history, positions['ticker'], start, today,
        timeout=timeout, max_workers=max_workers
    )
    benchmark_history = store.fetch_benchmark_history(benchmark_ticker, start, today)

    summary = build_report_summary(
        positions, price_histories, benchmark_history, risk_free_rate,
        today=today,
        benchmark_ticker=benchmark_ticker,
    )

    try:
        summary.commentary = narrative(summary)
    except Exception as e:
        logger.error(f"Error generating commentary: {e}")
        summary.commentary = f"{FAILED_COMMENTARY}: {e}"

    file_url = f"{REPORT_STORAGE_URL.rstrip('/')}/report-{today:%Y-%m-%d}.pdf"
    report_id = store.save_report(summary.to_dict(), file_url)
    store.update_settings(last_report_generation=datetime.utcnow())
    logger.info(f"Saved report {report_id} for {today:%Y-%m-%d}")
    return report_id, summary


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Portfolio dashboard scheduled jobs")
    parser.add_argument('--date', help="Run as of this date (YYYY-MM-DD)")
    subparsers = parser.add_subparsers(dest='command', required=True)
    subparsers.add_parser('update-prices', help="Fetch latest closes and revalue positions")
    report_parser = subparsers.add_parser('generate-report', help="Generate the monthly report")
    report_parser.add_argument('--force', action='store_true', help="Ignore the report generation day")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    init_db()
    store = RecordStore()
    today = to_timestamp(args.date) if args.date else None

    if args.command == 'update-prices':
        updated = update_prices(store, DataFetcher(), today)
        print(f"Updated {len(updated)} tickers")
        return 0

    if not args.force and not report_due(store.get_settings(), today):
        logger.info("Report not due today, use --force to generate anyway")
        return 0
    report_id, summary = generate_report(store, today)
    print(f"Generated report {report_id} for {summary.date}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
