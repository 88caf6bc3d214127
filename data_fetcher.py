"""
Data Fetcher Module
Fetches daily closes from yfinance and collects per-ticker histories
concurrently. Includes caching and retry handling.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from math import ceil
from typing import Callable, Dict, Iterable, Optional

import pandas as pd
import yfinance as yf

from config import FETCH_MAX_WORKERS, FETCH_TIMEOUT_SECONDS
from exceptions import DataUnavailable, UpstreamFailure
from utils import normalize_ticker, to_timestamp

logger = logging.getLogger(__name__)

HISTORY_COLUMNS = ['ticker', 'date', 'open', 'high', 'low', 'close', 'volume']

# fetch(ticker, start, end) -> long frame with at least [ticker, date, close]
FetchFn = Callable[[str, pd.Timestamp, pd.Timestamp], pd.DataFrame]


class DataFetcher:
    """
    Fetches and caches market data from yfinance
    """

    def __init__(
        self,
        cache_enabled: bool = True,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        request_timeout: float = FETCH_TIMEOUT_SECONDS
    ):
        self.cache_enabled = cache_enabled
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.request_timeout = request_timeout
        self._price_cache: Dict[str, pd.DataFrame] = {}
        self._info_cache: Dict[str, dict] = {}

    def fetch_price_history(self, ticker: str, start_date, end_date) -> pd.DataFrame:
        """
        Fetch daily history for one ticker, both dates inclusive

        Returns:
            DataFrame with columns [ticker, date, open, high, low, close, volume]

        Raises:
            DataUnavailable: the provider answered but returned no rows
            UpstreamFailure: every attempt raised
        """
        ticker = normalize_ticker(ticker)
        start = to_timestamp(start_date)
        end = to_timestamp(end_date)
        cache_key = f"{ticker}_{start.date()}_{end.date()}"

        if self.cache_enabled and cache_key in self._price_cache:
            logger.info(f"Using cached data for {ticker}")
            return self._price_cache[cache_key].copy()

        last_error = None
        for attempt in range(self.max_retries):
            try:
                logger.info(f"Fetching data for {ticker} (attempt {attempt + 1})")
                stock = yf.Ticker(ticker)
                # yfinance treats end as exclusive
                df = stock.history(
                    start=start, end=end + pd.Timedelta(days=1), auto_adjust=True, timeout=self.request_timeout
                )

                if df.empty:
                    last_error = None
                    if attempt < self.max_retries - 1:
                        time.sleep(self.retry_delay)
                    continue

                df = self._clean_history(df, ticker)
                if self.cache_enabled:
                    self._price_cache[cache_key] = df
                return df.copy()

            except Exception as e:
                last_error = e
                logger.error(f"Error fetching data for {ticker} (attempt {attempt + 1}): {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_delay)

        if last_error is not None:
            raise UpstreamFailure(f"{ticker}: {last_error}") from last_error
        logger.warning(f"No data returned for {ticker} after {self.max_retries} attempts")
        raise DataUnavailable(ticker, f"no data between {start.date()} and {end.date()}")

    @staticmethod
    def _clean_history(df: pd.DataFrame, ticker: str) -> pd.DataFrame:
        df = df.reset_index()
        df.columns = [str(col).lower().replace(' ', '_') for col in df.columns]

        if 'date' in df.columns and df['date'].dt.tz is not None:
            df['date'] = df['date'].dt.tz_localize(None)
        df['date'] = pd.to_datetime(df['date']).dt.normalize()
        df['ticker'] = ticker

        df = df.dropna(subset=['close'])
        return df.reindex(columns=HISTORY_COLUMNS)

    def fetch_latest_close(self, ticker: str, as_of=None, lookback_days: int = 7) -> Optional[float]:
        """
        Last close on or before as_of, looking back over a few days so
        weekends and holidays still resolve
        """
        end = to_timestamp(as_of) if as_of is not None else pd.Timestamp.today().normalize()
        try:
            df = self.fetch_price_history(ticker, end - pd.Timedelta(days=lookback_days), end)
        except (DataUnavailable, UpstreamFailure) as e:
            logger.warning(f"No latest close for {ticker}: {e}")
            return None
        return float(df.sort_values('date')['close'].iloc[-1])

    def fetch_ticker_info(self, ticker: str) -> dict:
        """
        Fetch company name and sector for a ticker
        """
        ticker = normalize_ticker(ticker)
        if self.cache_enabled and ticker in self._info_cache:
            return self._info_cache[ticker]

        try:
            info = yf.Ticker(ticker).info

            result = {
                'ticker': ticker,
                'name': info.get('shortName', info.get('longName', ticker)),
                'sector': info.get('sector', 'Unknown'),
                'currency': info.get('currency', 'USD'),
            }

            if self.cache_enabled:
                self._info_cache[ticker] = result

            return result

        except Exception as e:
            logger.error(f"Error fetching info for {ticker}: {e}")
            return {'ticker': ticker, 'name': ticker, 'sector': 'Unknown'}

    def clear_cache(self):
        """Clear all cached data"""
        self._price_cache.clear()
        self._info_cache.clear()
        logger.info("Cache cleared")


def _empty_history() -> pd.DataFrame:
    return pd.DataFrame(columns=['ticker', 'date', 'close'])


def collect_price_histories(
    fetch: FetchFn,
    tickers: Iterable[str],
    start_date,
    end_date,
    timeout: float = FETCH_TIMEOUT_SECONDS,
    max_workers: int = FETCH_MAX_WORKERS
) -> pd.DataFrame:
    """
    Fetch every ticker's history concurrently and join before returning

    A ticker that times out or raises is logged and treated as having no
    data; a ticker with an empty history likewise. Only when every ticker
    failed is the provider considered unusable.

    Timed-out fetches are abandoned, not interrupted: their worker threads
    run on until the underlying call returns, and the interpreter waits for
    them at exit. Fetch callables should bound their own I/O (DataFetcher
    passes request_timeout to yfinance).

    Args:
        fetch: Callable (ticker, start, end) -> long price frame
        tickers: Tickers to fetch; duplicates are fetched once
        timeout: Seconds allowed per fetch

    Returns:
        Long DataFrame of all successful histories

    Raises:
        UpstreamFailure: every requested fetch failed
    """
    tickers = list(dict.fromkeys(normalize_ticker(t) for t in tickers if normalize_ticker(t)))
    if not tickers:
        return _empty_history()

    start = to_timestamp(start_date)
    end = to_timestamp(end_date)
    workers = max(1, min(max_workers, len(tickers)))
    # Queued fetches only start once a worker frees up
    deadline = time.monotonic() + timeout * ceil(len(tickers) / workers)

    frames = []
    failed = []
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='price-fetch')
    try:
        futures = {ticker: executor.submit(fetch, ticker, start, end) for ticker in tickers}
        for ticker, future in futures.items():
            remaining = max(0.0, deadline - time.monotonic())
            try:
                frame = future.result(timeout=remaining)
            except FuturesTimeoutError:
                future.cancel()
                logger.warning(f"Timed out fetching {ticker} after {timeout:.0f}s")
                failed.append(ticker)
                continue
            except DataUnavailable as e:
                logger.warning(f"No price data for {ticker}: {e.reason}")
                continue
            except Exception as e:
                logger.warning(f"Failed to fetch {ticker}: {e}")
                failed.append(ticker)
                continue

            if frame is None or len(frame) == 0:
                logger.warning(f"No price data for {ticker}")
                continue
            frame = pd.DataFrame(frame).copy()
            if 'ticker' not in frame.columns:
                frame['ticker'] = ticker
            frames.append(frame)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    if len(failed) == len(tickers):
        logger.error(f"All {len(tickers)} price fetches failed")
        raise UpstreamFailure(f"Price data unavailable for all tickers: {', '.join(failed)}")

    if not frames:
        return _empty_history()
    return pd.concat(frames, ignore_index=True)


def get_risk_free_rate() -> float:
    """
    Get the current risk-free rate (10-year Treasury yield)
    Returns annualized rate as decimal (e.g., 0.04 for 4%)
    """
    try:
        info = yf.Ticker("^TNX").info

        # The yield is quoted in percent
        rate = info.get('regularMarketPrice', 4.0) / 100
        return rate

    except Exception as e:
        logger.warning(f"Could not fetch risk-free rate: {e}. Using default 4%")
        return 0.04


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    fetcher = DataFetcher()
    today = pd.Timestamp.today().normalize()
    history = collect_price_histories(
        fetcher.fetch_price_history, ["AAPL", "MSFT", "SPY"], today - pd.Timedelta(days=30), today
    )
    print(f"Fetched {len(history)} rows")
    print(history.tail())
    print(f"\nCurrent risk-free rate: {get_risk_free_rate():.2%}")
