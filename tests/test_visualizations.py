"""
Smoke tests for the dashboard charts
"""

import pandas as pd
import pytest

from calculations import RiskMetrics, SectorAllocation
from performance import compute_performance, compute_top_movers
from visualizations import (
    plot_drawdown, plot_holdings_allocation, plot_performance, plot_risk_metrics,
    plot_sector_allocation, plot_top_movers,
)

TODAY = pd.Timestamp('2024-06-14')


@pytest.fixture
def positions():
    return pd.DataFrame([
        {'ticker': 'AAPL', 'shares': 10, 'purchase_price': 100.0, 'current_price': 120.0,
         'market_value': 1200.0},
        {'ticker': 'XOM', 'shares': 10, 'purchase_price': 100.0, 'current_price': 80.0,
         'market_value': 800.0},
    ])


@pytest.fixture
def prices():
    dates = pd.bdate_range('2024-06-10', periods=5)
    return pd.concat([
        pd.DataFrame({'ticker': 'AAPL', 'date': dates, 'close': [100.0, 104.0, 98.0, 110.0, 120.0]}),
        pd.DataFrame({'ticker': 'XOM', 'date': dates, 'close': [100.0, 95.0, 90.0, 85.0, 80.0]}),
    ])


class TestCharts:
    """Test suite for chart builders"""

    def test_performance_has_both_traces(self, positions, prices):
        benchmark = prices[prices['ticker'] == 'AAPL'].assign(ticker='SPY')
        result = compute_performance(positions, prices, benchmark, '1W', today=TODAY)

        fig = plot_performance(result, benchmark_name='SPY')

        assert [trace.name for trace in fig.data] == ['Portfolio', 'SPY']

    def test_performance_without_benchmark(self, positions, prices):
        result = compute_performance(positions, prices, None, '1W', today=TODAY)

        assert [trace.name for trace in plot_performance(result).data] == ['Portfolio']

    def test_empty_performance_is_annotated(self):
        result = compute_performance(pd.DataFrame([]), None, None, '1M', today=TODAY)
        fig = plot_performance(result)

        assert len(fig.data) == 0
        assert fig.layout.annotations[0].text == 'No data for this period'

    def test_drawdown_is_non_positive(self):
        values = pd.Series([100.0, 120.0, 90.0, 110.0], index=pd.bdate_range('2024-06-10', periods=4))
        fig = plot_drawdown(values)

        assert max(fig.data[0].y) <= 0
        assert min(fig.data[0].y) == pytest.approx(-25.0)

    def test_sector_allocation_bars(self):
        allocations = [
            SectorAllocation('Technology', 60.0, 25.5, 34.5),
            SectorAllocation('Energy', 40.0, 5.2, 34.8),
        ]
        fig = plot_sector_allocation(allocations)

        assert list(fig.data[0].y) == [60.0, 40.0]
        assert list(fig.data[1].y) == [25.5, 5.2]

    def test_holdings_donut(self, positions):
        fig = plot_holdings_allocation(positions)

        assert list(fig.data[0].labels) == ['AAPL', 'XOM']

    def test_top_movers_colors(self, positions):
        movers = compute_top_movers(positions, None, '1M', today=TODAY)
        fig = plot_top_movers(movers.gainers)

        assert list(fig.data[0].y) == ['XOM', 'AAPL']
        assert fig.data[0].marker.color[0] != fig.data[0].marker.color[1]

    def test_risk_gauges_with_unavailable_values(self):
        metrics = RiskMetrics(
            sharpe_ratio=1.2, beta=None, standard_deviation_pct=18.0, max_drawdown=0.1,
            risk_free_rate=0.05, observations=1,
        )
        fig = plot_risk_metrics(metrics)

        assert len(fig.data) == 4
        assert fig.data[1].title.text == 'Beta (n/a)'
        assert fig.data[3].value == pytest.approx(10.0)
