"""
Performance Summary Builder
Resolves look-back windows and builds percent-change series, period
comparisons and top movers on top of the calculation engine
"""

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd

from calculations import (
    PriceAligner, ReturnsCalculator, RiskMetrics, ValuationEngine, check_fill_policy,
    compute_risk_metrics, prepare_positions,
)
from config import DEFAULT_TOP_N, PRICE_FILL_POLICY
from utils import to_timestamp

logger = logging.getLogger(__name__)

EPOCH = pd.Timestamp('1970-01-01')


class PerformanceWindow(str, Enum):
    ONE_DAY = '1D'
    ONE_WEEK = '1W'
    ONE_MONTH = '1M'
    THREE_MONTHS = '3M'
    SIX_MONTHS = '6M'
    ONE_YEAR = '1Y'
    YEAR_TO_DATE = 'YTD'
    MAX = 'MAX'

    def resolve(self, today=None) -> Tuple[pd.Timestamp, pd.Timestamp]:
        """(start, end) of the window; end is always today"""
        end = to_timestamp(today) if today is not None else pd.Timestamp.today().normalize()
        if self is PerformanceWindow.YEAR_TO_DATE:
            start = pd.Timestamp(year=end.year, month=1, day=1)
        elif self is PerformanceWindow.MAX:
            start = EPOCH
        else:
            start = end - WINDOW_OFFSETS[self]
        return start, end


WINDOW_OFFSETS = {
    PerformanceWindow.ONE_DAY: pd.DateOffset(days=1),
    PerformanceWindow.ONE_WEEK: pd.DateOffset(weeks=1),
    PerformanceWindow.ONE_MONTH: pd.DateOffset(months=1),
    PerformanceWindow.THREE_MONTHS: pd.DateOffset(months=3),
    PerformanceWindow.SIX_MONTHS: pd.DateOffset(months=6),
    PerformanceWindow.ONE_YEAR: pd.DateOffset(years=1),
}

# Windows of the rolling-returns table
ROLLING_WINDOWS = [
    PerformanceWindow.ONE_MONTH,
    PerformanceWindow.THREE_MONTHS,
    PerformanceWindow.SIX_MONTHS,
    PerformanceWindow.YEAR_TO_DATE,
    PerformanceWindow.ONE_YEAR,
]

# Risk statistics are always computed over this window
RISK_WINDOW = PerformanceWindow.ONE_YEAR

WindowSpec = Union[PerformanceWindow, str, Tuple]


def resolve_window(window: WindowSpec, today=None) -> Tuple[pd.Timestamp, pd.Timestamp]:
    """
    Resolve a named window or an explicit (start, end) pair to timestamps

    Raises:
        ValueError: unknown window name or start after end
    """
    if isinstance(window, (tuple, list)):
        if len(window) != 2:
            raise ValueError("A custom window is a (start, end) pair")
        start, end = to_timestamp(window[0]), to_timestamp(window[1])
        if start > end:
            raise ValueError(f"Window start {start.date()} is after end {end.date()}")
        return start, end
    return PerformanceWindow(window).resolve(today)


def window_label(window: WindowSpec) -> str:
    if isinstance(window, (tuple, list)):
        start, end = resolve_window(window)
        return f"{start:%Y-%m-%d} to {end:%Y-%m-%d}"
    return PerformanceWindow(window).value


@dataclass
class PerformanceResult:
    """Portfolio and benchmark values over one window with percent changes"""
    start: pd.Timestamp
    end: pd.Timestamp
    portfolio_values: pd.Series
    benchmark_values: pd.Series
    portfolio_pct_change: pd.Series
    benchmark_pct_change: pd.Series

    @property
    def is_empty(self) -> bool:
        return self.portfolio_values.empty

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame({
            'portfolio_value': self.portfolio_values,
            'benchmark_value': self.benchmark_values,
            'portfolio_pct_change': self.portfolio_pct_change,
            'benchmark_pct_change': self.benchmark_pct_change,
        })
        frame.index.name = 'date'
        return frame


def compute_performance(
    positions,
    price_histories,
    benchmark_history,
    window: WindowSpec = PerformanceWindow.ONE_MONTH,
    today=None,
    fill_policy: Optional[str] = None,
    benchmark_ticker: Optional[str] = None
) -> PerformanceResult:
    """
    Build value and percent-change series for the portfolio and benchmark

    Args:
        positions: Positions snapshot
        price_histories: Long frame [ticker, date, close] or {ticker: frame}
        benchmark_history: Frame [date, close] of the benchmark
        window: Named window or explicit (start, end)
        today: Reference date for named windows (defaults to today)
        fill_policy: "drop" (default) or "ffill"

    Returns:
        PerformanceResult; both percent series start at exactly 0
    """
    fill_policy = check_fill_policy(fill_policy or PRICE_FILL_POLICY)
    start, end = resolve_window(window, today)

    portfolio, benchmark = ValuationEngine.value_series(
        positions, price_histories, benchmark_history,
        start=start, end=end,
        fill_policy=fill_policy,
        benchmark_ticker=benchmark_ticker
    )

    return PerformanceResult(
        start=start,
        end=end,
        portfolio_values=portfolio,
        benchmark_values=benchmark,
        portfolio_pct_change=ReturnsCalculator.percent_change(portfolio),
        benchmark_pct_change=ReturnsCalculator.percent_change(benchmark),
    )


def compute_trailing_risk(
    positions,
    price_histories,
    benchmark_history,
    risk_free_rate: Optional[float],
    today=None,
    fill_policy: Optional[str] = None,
    alignment: Optional[str] = None,
    benchmark_ticker: Optional[str] = None
) -> RiskMetrics:
    """
    Risk statistics over the trailing risk window ending today

    Dashboard and reports both go through here so their figures agree
    regardless of the window on display.
    """
    start, end = resolve_window(RISK_WINDOW, today)
    return compute_risk_metrics(
        positions, price_histories, benchmark_history, risk_free_rate,
        start=start, end=end,
        fill_policy=fill_policy,
        alignment=alignment,
        benchmark_ticker=benchmark_ticker
    )


@dataclass
class PeriodComparison:
    period: str
    portfolio_return: Optional[float]
    benchmark_return: Optional[float]
    difference: Optional[float]


def period_change(values: pd.Series, start=None, end=None) -> Optional[float]:
    """
    Percent change between the first and last resolved (positive) values
    within [start, end]; None when the window holds no resolved value
    """
    values = pd.Series(values, dtype=float)
    if start is not None:
        values = values[values.index >= to_timestamp(start)]
    if end is not None:
        values = values[values.index <= to_timestamp(end)]

    resolved = values[values > 0]
    if resolved.empty:
        return None
    return float((resolved.iloc[-1] / resolved.iloc[0] - 1) * 100)


def period_comparisons(
    portfolio_values: pd.Series,
    benchmark_values: pd.Series,
    windows: Iterable[WindowSpec] = ROLLING_WINDOWS,
    today=None
) -> List[PeriodComparison]:
    """Portfolio vs benchmark percent change for each window"""
    comparisons = []
    for window in windows:
        start, end = resolve_window(window, today)
        portfolio_return = period_change(portfolio_values, start, end)
        benchmark_return = period_change(benchmark_values, start, end)
        if portfolio_return is not None and benchmark_return is not None:
            difference = portfolio_return - benchmark_return
        else:
            difference = None
        comparisons.append(PeriodComparison(
            period=window_label(window),
            portfolio_return=portfolio_return,
            benchmark_return=benchmark_return,
            difference=difference,
        ))
    return comparisons


@dataclass
class TopMover:
    ticker: str
    company_name: str
    gain_loss_percent: float
    gain_loss_amount: float
    contribution: float


@dataclass
class TopMovers:
    gainers: List[TopMover] = field(default_factory=list)
    losers: List[TopMover] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'gainers': [asdict(m) for m in self.gainers],
            'losers': [asdict(m) for m in self.losers],
        }


def _positive(value) -> bool:
    return value is not None and pd.notna(value) and value > 0


def compute_top_movers(
    positions,
    price_histories,
    window: WindowSpec = PerformanceWindow.ONE_MONTH,
    top_n: int = DEFAULT_TOP_N,
    today=None
) -> TopMovers:
    """
    Rank positions by percent change over the window

    Start price is the last close at or before the window start, falling
    back to the purchase price. End price is the last close at or before
    the window end, falling back to the cached current price. Contribution
    is the position's dollar change as a percent of the total current
    portfolio value. Ties keep position order.
    """
    if top_n < 0:
        raise ValueError("top_n must be non-negative")

    start, end = resolve_window(window, today)
    frame = prepare_positions(positions)
    if frame.empty:
        return TopMovers()

    prepared = PriceAligner.prepare_prices(price_histories)
    start_prices = PriceAligner.latest_prices(prepared, as_of=start)
    end_prices = PriceAligner.latest_prices(prepared, as_of=end)

    rows = []
    for position in frame.itertuples(index=False):
        shares = position.shares if pd.notna(position.shares) else 0.0

        start_price = start_prices.get(position.ticker)
        if start_price is None:
            start_price = position.purchase_price
            logger.info(f"No close for {position.ticker} at {start.date()}, using purchase price")

        end_price = end_prices.get(position.ticker)
        if end_price is None:
            end_price = position.current_price if _positive(position.current_price) else start_price

        if _positive(start_price) and _positive(end_price):
            percent = (end_price - start_price) / start_price * 100
            amount = (end_price - start_price) * shares
        else:
            percent = 0.0
            amount = 0.0

        rows.append({
            'ticker': position.ticker,
            'company_name': position.company_name,
            'percent': float(percent),
            'amount': float(amount),
        })

    total_value = ValuationEngine.total_value(frame)
    movers = [
        TopMover(
            ticker=row['ticker'],
            company_name=row['company_name'],
            gain_loss_percent=row['percent'],
            gain_loss_amount=row['amount'],
            contribution=row['amount'] / total_value * 100 if total_value > 0 else 0.0,
        )
        for row in rows
    ]

    gainers = sorted(movers, key=lambda m: m.gain_loss_percent, reverse=True)[:top_n]
    losers = sorted(movers, key=lambda m: m.gain_loss_percent)[:top_n]
    return TopMovers(gainers=gainers, losers=losers)


def movers_frame(movers: Sequence[TopMover]) -> pd.DataFrame:
    """Tabular view of a mover list for display and charts"""
    return pd.DataFrame(
        [asdict(m) for m in movers],
        columns=['ticker', 'company_name', 'gain_loss_percent', 'gain_loss_amount', 'contribution'],
    )
