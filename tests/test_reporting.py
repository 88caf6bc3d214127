"""
Tests for the record store, report generation and scheduled jobs
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pandas as pd
import pytest

from exceptions import ConfigurationError, UpstreamFailure
from jobs import generate_report, update_prices
from models import Settings
from performance import PeriodComparison, compute_trailing_risk
from reporting import (
    FAILED_COMMENTARY, build_narrative_prompt, build_report_summary, generate_narrative,
    report_due, validate_settings,
)
from store import RecordStore

TODAY = pd.Timestamp('2024-06-14')


def make_prices(ticker, closes, start):
    dates = pd.bdate_range(start=start, periods=len(closes))
    return pd.DataFrame({'ticker': ticker, 'date': dates, 'close': closes})


@pytest.fixture
def store(tmp_path):
    store = RecordStore.from_url(f"sqlite:///{tmp_path / 'portfolio.db'}")
    store.update_settings(benchmark_ticker='SPY', risk_free_rate=0.05, admin_password='secret')
    return store


@pytest.fixture
def populated_store(store):
    store.add_position('AAPL', 10, '2024-01-02', 150.0, 'Apple Inc.', 'Technology')
    store.add_position('XOM', 20, '2024-01-02', 100.0, 'Exxon Mobil', 'Energy')
    store.save_prices(make_prices('AAPL', [180.0, 182.0, 185.0, 190.0, 195.0], '2024-06-10'))
    store.save_prices(make_prices('XOM', [110.0, 108.0, 107.0, 109.0, 111.0], '2024-06-10'))
    store.save_prices(make_prices('SPY', [530.0, 532.0, 535.0, 534.0, 540.0], '2024-06-10'), benchmark=True)
    return store


class TestRecordStore:
    """Test suite for RecordStore"""

    def test_settings_seeded(self, store):
        settings = store.get_settings()

        assert settings['benchmark_ticker'] == 'SPY'
        assert settings['risk_free_rate'] == 0.05

    def test_missing_settings_is_upstream_failure(self, store):
        with store.session() as session:
            session.query(Settings).delete()

        with pytest.raises(UpstreamFailure):
            store.get_settings()

    def test_admin_password(self, store):
        assert store.check_admin_password('secret')
        assert not store.check_admin_password('wrong')
        assert not store.check_admin_password('')

    def test_positions_weights_after_add(self, store):
        store.add_position('aapl', 10, '2024-01-02', 100.0)
        store.add_position('MSFT', 30, '2024-01-02', 100.0)
        positions = store.get_positions()

        assert list(positions['ticker']) == ['AAPL', 'MSFT']
        assert list(positions['weight']) == pytest.approx([25.0, 75.0])
        assert list(positions['sector']) == ['Unknown', 'Unknown']

    def test_delete_position(self, store):
        position_id = store.add_position('AAPL', 10, '2024-01-02', 100.0)
        store.add_position('MSFT', 10, '2024-01-02', 100.0)
        store.delete_position(position_id)
        positions = store.get_positions()

        assert list(positions['ticker']) == ['MSFT']
        assert list(positions['weight']) == pytest.approx([100.0])

    def test_update_position(self, store):
        position_id = store.add_position('AAPL', 10, '2024-01-02', 100.0)
        store.add_position('MSFT', 10, '2024-01-02', 100.0)
        store.update_position(position_id, shares=30, sector='Technology')
        positions = store.get_positions()

        assert positions.loc[0, 'sector'] == 'Technology'
        assert positions.loc[0, 'cost_basis'] == pytest.approx(3000.0)
        assert list(positions['weight']) == pytest.approx([75.0, 25.0])

    def test_update_missing_position(self, store):
        with pytest.raises(KeyError):
            store.update_position(999, shares=1)

    def test_replace_positions(self, store):
        store.add_position('AAPL', 10, '2024-01-02', 100.0)
        imported = pd.DataFrame([
            {'ticker': 'JPM', 'company_name': 'JPMorgan', 'shares': 5, 'purchase_date': '2024-02-01',
             'purchase_price': 140.0, 'sector': 'Financials', 'notes': ''},
        ])
        assert store.replace_positions(imported) == 1
        assert list(store.get_positions()['ticker']) == ['JPM']

    def test_save_prices_is_idempotent(self, store):
        prices = make_prices('AAPL', [100.0, 101.0], '2024-06-13')

        assert store.save_prices(prices) == 2
        assert store.save_prices(prices) == 0

        history = store.fetch_price_history('AAPL', '2024-06-01', TODAY)
        assert list(history.columns) == ['ticker', 'date', 'close']
        assert list(history['close']) == [100.0, 101.0]
        assert store.has_price('AAPL', TODAY)
        assert not store.has_price('AAPL', TODAY, benchmark=True)


class TestReportSummary:
    """Test suite for report assembly"""

    def test_validate_settings(self):
        assert validate_settings({'benchmark_ticker': 'spy', 'risk_free_rate': 0.04}) == ('SPY', 0.04)

        with pytest.raises(ConfigurationError):
            validate_settings({'benchmark_ticker': '', 'risk_free_rate': 0.04})
        with pytest.raises(ConfigurationError):
            validate_settings({'benchmark_ticker': 'SPY', 'risk_free_rate': None})

    def test_report_due(self):
        settings = {'report_generation_day': 14, 'last_report_generation': None}

        assert report_due(settings, TODAY)
        assert not report_due(settings, TODAY + pd.Timedelta(days=1))
        assert not report_due({**settings, 'last_report_generation': TODAY + pd.Timedelta(hours=9)}, TODAY)

    def test_build_report_summary(self):
        positions = pd.DataFrame([
            {'ticker': 'AAPL', 'company_name': 'Apple', 'shares': 10, 'purchase_price': 100.0,
             'sector': 'Technology'},
            {'ticker': 'XOM', 'company_name': 'Exxon', 'shares': 10, 'purchase_price': 100.0,
             'sector': 'Energy'},
        ])
        prices = pd.concat([
            make_prices('AAPL', [100.0, 110.0, 105.0, 120.0], '2024-06-11'),
            make_prices('XOM', [100.0, 100.0, 100.0, 80.0], '2024-06-11'),
        ])
        benchmark = make_prices('SPY', [500.0, 505.0, 502.0, 510.0], '2024-06-11')

        summary = build_report_summary(positions, prices, benchmark, 0.05, today=TODAY, benchmark_ticker='SPY')

        assert summary.date == '2024-06-14'
        assert summary.portfolio_value == pytest.approx(2000.0)
        assert summary.benchmark_value == 510.0
        assert [s.sector for s in summary.sector_allocation] == ['Technology', 'Energy']
        assert sum(s.weight for s in summary.sector_allocation) == pytest.approx(100.0)
        assert summary.top_gainers[0].ticker == 'AAPL'
        assert summary.top_losers[0].ticker == 'XOM'
        assert summary.risk_metrics.observations == 3
        assert summary.monthly_performance.period == '1M'
        assert [c.period for c in summary.rolling_returns] == ['1M', '3M', '6M', 'YTD', '1Y']
        assert summary.to_dict()['risk_metrics']['risk_free_rate'] == 0.05

    def test_risk_uses_trailing_year(self):
        dates = pd.bdate_range(end=TODAY, periods=400)
        positions = pd.DataFrame([{'ticker': 'AAPL', 'shares': 10, 'purchase_price': 100.0,
                                   'sector': 'Technology'}])
        prices = pd.DataFrame({'ticker': 'AAPL', 'date': dates, 'close': [100.0 + i % 9 for i in range(400)]})
        benchmark = pd.DataFrame({'ticker': 'SPY', 'date': dates, 'close': [500.0 + i % 4 for i in range(400)]})

        summary = build_report_summary(positions, prices, benchmark, 0.05, today=TODAY, benchmark_ticker='SPY')

        expected = compute_trailing_risk(positions, prices, benchmark, 0.05, today=TODAY, benchmark_ticker='SPY')
        assert summary.risk_metrics == expected
        assert summary.risk_metrics.observations == (dates >= TODAY - pd.DateOffset(years=1)).sum() - 1

    def test_missing_risk_free_rate(self):
        with pytest.raises(ConfigurationError):
            build_report_summary(pd.DataFrame([]), None, None, None, today=TODAY)


class TestNarrative:
    """Test suite for narrative commentary"""

    @pytest.fixture
    def summary(self):
        return build_report_summary(pd.DataFrame([]), None, None, 0.05, today=TODAY, benchmark_ticker='SPY')

    def test_prompt_handles_unavailable_values(self, summary):
        prompt = build_narrative_prompt(summary)

        assert 'n/a' in prompt
        assert '2024-06-14' in prompt

    def test_missing_api_key(self, summary):
        commentary = generate_narrative(summary, api_key='')

        assert commentary.startswith(FAILED_COMMENTARY)

    def test_api_error_becomes_failure_message(self, summary):
        client = MagicMock()
        client.chat.completions.create.side_effect = RuntimeError("rate limited")

        commentary = generate_narrative(summary, client=client)

        assert commentary == f"{FAILED_COMMENTARY}: rate limited"

    def test_successful_commentary(self, summary):
        client = MagicMock()
        client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=" Strong month. "))]
        )

        assert generate_narrative(summary, client=client) == "Strong month."


class TestJobs:
    """Test suite for the scheduled jobs"""

    def test_generate_report_persists(self, populated_store):
        report_id, summary = generate_report(populated_store, today=TODAY, narrative=lambda s: "All good.")

        reports = populated_store.list_reports()
        assert [r['id'] for r in reports] == [report_id]
        assert reports[0]['commentary'] == "All good."
        assert reports[0]['file_url'].endswith('report-2024-06-14.pdf')
        assert reports[0]['portfolio_value'] == pytest.approx(summary.portfolio_value)
        assert reports[0]['summary']['benchmark_ticker'] == 'SPY'
        assert isinstance(summary.monthly_performance, PeriodComparison)
        assert populated_store.get_settings()['last_report_generation'] is not None

    def test_narrative_failure_does_not_block_report(self, populated_store):
        def broken(summary):
            raise RuntimeError("model offline")

        _, summary = generate_report(populated_store, today=TODAY, narrative=broken)

        assert summary.commentary == f"{FAILED_COMMENTARY}: model offline"
        assert populated_store.list_reports()[0]['commentary'] == summary.commentary

    def test_generate_report_requires_benchmark(self, populated_store):
        populated_store.update_settings(benchmark_ticker='')

        with pytest.raises(ConfigurationError):
            generate_report(populated_store, today=TODAY, narrative=lambda s: '')

    def test_update_prices(self, store):
        store.add_position('AAPL', 10, '2024-01-02', 100.0)
        store.add_position('MSFT', 10, '2024-01-02', 100.0)

        fetcher = MagicMock()
        fetcher.fetch_price_history.side_effect = lambda ticker, start, end: make_prices(
            ticker, [200.0 if ticker == 'AAPL' else 300.0], TODAY
        )

        updated = update_prices(store, fetcher, today=TODAY, timeout=5)

        assert sorted(updated) == ['AAPL', 'MSFT', 'SPY']
        positions = store.get_positions()
        assert list(positions['current_price']) == [200.0, 300.0]
        assert list(positions['weight']) == pytest.approx([40.0, 60.0])
        assert store.has_price('SPY', TODAY, benchmark=True)
        assert store.get_settings()['last_price_update'] is not None

        assert update_prices(store, fetcher, today=TODAY, timeout=5) == []
        assert fetcher.fetch_price_history.call_count == 3
