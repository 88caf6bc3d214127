"""
Unit Tests for market data collection
"""

import threading
from unittest.mock import PropertyMock, patch

import pandas as pd
import pytest

from data_fetcher import DataFetcher, collect_price_histories
from exceptions import DataUnavailable, UpstreamFailure

START = pd.Timestamp('2024-06-03')
END = pd.Timestamp('2024-06-07')


def fake_history(ticker, start, end):
    dates = pd.bdate_range(start, end)
    return pd.DataFrame({'ticker': ticker, 'date': dates, 'close': 100.0})


class TestCollectPriceHistories:
    """Test suite for collect_price_histories"""

    def test_collects_every_ticker(self):
        history = collect_price_histories(fake_history, ['AAPL', 'msft', 'AAPL'], START, END)

        assert sorted(history['ticker'].unique()) == ['AAPL', 'MSFT']
        assert len(history) == 10

    def test_failed_ticker_degrades_to_no_data(self, caplog):
        def fetch(ticker, start, end):
            if ticker == 'BAD':
                raise RuntimeError("provider error")
            return fake_history(ticker, start, end)

        history = collect_price_histories(fetch, ['AAPL', 'BAD'], START, END)

        assert list(history['ticker'].unique()) == ['AAPL']
        assert 'BAD' in caplog.text

    def test_unavailable_and_empty_tickers(self):
        def fetch(ticker, start, end):
            if ticker == 'EMPTY':
                return pd.DataFrame()
            raise DataUnavailable(ticker)

        history = collect_price_histories(fetch, ['EMPTY', 'GONE'], START, END)

        assert history.empty

    def test_all_failed_raises(self):
        def fetch(ticker, start, end):
            raise ConnectionError("unreachable")

        with pytest.raises(UpstreamFailure):
            collect_price_histories(fetch, ['AAPL', 'MSFT'], START, END)

    def test_timed_out_ticker_is_skipped(self):
        release = threading.Event()

        def fetch(ticker, start, end):
            if ticker == 'SLOW':
                release.wait(5)
            return fake_history(ticker, start, end)

        try:
            history = collect_price_histories(fetch, ['AAPL', 'SLOW'], START, END, timeout=0.2)
        finally:
            release.set()

        assert list(history['ticker'].unique()) == ['AAPL']

    def test_no_tickers(self):
        history = collect_price_histories(fake_history, [], START, END)

        assert history.empty
        assert list(history.columns) == ['ticker', 'date', 'close']

    def test_history_without_ticker_column(self):
        def fetch(ticker, start, end):
            return pd.DataFrame({'date': [start], 'close': [1.0]})

        history = collect_price_histories(fetch, ['SPY'], START, END)

        assert list(history['ticker']) == ['SPY']


class TestDataFetcher:
    """Test suite for DataFetcher with yfinance mocked"""

    @pytest.fixture
    def yf_history(self):
        index = pd.DatetimeIndex(
            pd.to_datetime(['2024-06-03', '2024-06-04']).tz_localize('America/New_York'),
            name='Date'
        )
        return pd.DataFrame({
            'Open': [99.0, 100.0],
            'High': [101.0, 102.0],
            'Low': [98.0, 99.0],
            'Close': [100.0, 101.0],
            'Volume': [1000, 1200],
        }, index=index)

    def test_fetch_price_history(self, yf_history):
        with patch('data_fetcher.yf.Ticker') as ticker_cls:
            ticker_cls.return_value.history.return_value = yf_history
            fetcher = DataFetcher(retry_delay=0)
            df = fetcher.fetch_price_history('aapl', START, END)

        assert list(df.columns) == ['ticker', 'date', 'open', 'high', 'low', 'close', 'volume']
        assert list(df['ticker'].unique()) == ['AAPL']
        assert df['date'].dt.tz is None
        assert list(df['close']) == [100.0, 101.0]

    def test_fetch_uses_cache(self, yf_history):
        with patch('data_fetcher.yf.Ticker') as ticker_cls:
            ticker_cls.return_value.history.return_value = yf_history
            fetcher = DataFetcher(retry_delay=0)
            fetcher.fetch_price_history('AAPL', START, END)
            fetcher.fetch_price_history('AAPL', START, END)

        assert ticker_cls.return_value.history.call_count == 1

    def test_history_request_is_bounded(self, yf_history):
        with patch('data_fetcher.yf.Ticker') as ticker_cls:
            ticker_cls.return_value.history.return_value = yf_history
            DataFetcher(retry_delay=0, request_timeout=4).fetch_price_history('AAPL', START, END)

        _, kwargs = ticker_cls.return_value.history.call_args
        assert kwargs['timeout'] == 4
        assert kwargs['end'] == END + pd.Timedelta(days=1)

    def test_clear_cache_refetches(self, yf_history):
        with patch('data_fetcher.yf.Ticker') as ticker_cls:
            ticker_cls.return_value.history.return_value = yf_history
            fetcher = DataFetcher(retry_delay=0)
            fetcher.fetch_price_history('AAPL', START, END)
            fetcher.clear_cache()
            fetcher.fetch_price_history('AAPL', START, END)

        assert ticker_cls.return_value.history.call_count == 2

    def test_empty_history_raises_unavailable(self):
        with patch('data_fetcher.yf.Ticker') as ticker_cls:
            ticker_cls.return_value.history.return_value = pd.DataFrame()
            fetcher = DataFetcher(max_retries=2, retry_delay=0)

            with pytest.raises(DataUnavailable):
                fetcher.fetch_price_history('AAPL', START, END)

        assert ticker_cls.return_value.history.call_count == 2

    def test_provider_errors_raise_upstream_failure(self):
        with patch('data_fetcher.yf.Ticker') as ticker_cls:
            ticker_cls.return_value.history.side_effect = ConnectionError("down")
            fetcher = DataFetcher(max_retries=2, retry_delay=0)

            with pytest.raises(UpstreamFailure):
                fetcher.fetch_price_history('AAPL', START, END)

    def test_fetch_latest_close(self, yf_history):
        with patch('data_fetcher.yf.Ticker') as ticker_cls:
            ticker_cls.return_value.history.return_value = yf_history
            fetcher = DataFetcher(retry_delay=0)

            assert fetcher.fetch_latest_close('AAPL', as_of=END) == 101.0

    def test_fetch_ticker_info_fallback(self):
        with patch('data_fetcher.yf.Ticker') as ticker_cls:
            type(ticker_cls.return_value).info = PropertyMock(side_effect=ValueError("bad"))
            info = DataFetcher().fetch_ticker_info('xyz')

        assert info == {'ticker': 'XYZ', 'name': 'XYZ', 'sector': 'Unknown'}
