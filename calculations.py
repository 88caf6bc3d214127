"""
Portfolio Calculation Engine
Aligns per-ticker price histories onto one calendar, values the portfolio
and its benchmark, and derives return series, risk statistics and sector
allocation. Every function works on read-only input snapshots.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from config import (
    BENCHMARK_SECTOR_WEIGHTS, PRICE_FILL_POLICY, RETURN_ALIGNMENT,
    TRADING_DAYS_PER_YEAR, WEIGHT_TOLERANCE,
)
from exceptions import ConfigurationError
from utils import normalize_ticker, to_timestamp

logger = logging.getLogger(__name__)

FILL_DROP = 'drop'
FILL_FORWARD = 'ffill'
FILL_POLICIES = (FILL_DROP, FILL_FORWARD)

ALIGN_INDEX = 'index'
ALIGN_DATE = 'date'
ALIGNMENTS = (ALIGN_INDEX, ALIGN_DATE)

BENCHMARK_KEY = 'BENCHMARK'

POSITION_COLUMNS = [
    'ticker', 'company_name', 'shares', 'purchase_date', 'purchase_price',
    'sector', 'current_price', 'market_value', 'weight',
]
NUMERIC_POSITION_COLUMNS = ['shares', 'purchase_price', 'current_price', 'market_value', 'weight']

# Variances at or below this are treated as a constant series
ZERO_VARIANCE = 1e-16

PriceInput = Union[pd.DataFrame, Mapping[str, pd.DataFrame]]


@dataclass(frozen=True)
class RiskMetrics:
    """Risk statistics for one computation; None marks an unavailable value"""
    sharpe_ratio: Optional[float]
    beta: Optional[float]
    standard_deviation_pct: Optional[float]
    max_drawdown: Optional[float]
    risk_free_rate: float
    observations: int = 0

    @property
    def is_available(self) -> bool:
        return self.observations > 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SectorAllocation:
    """Portfolio vs benchmark weight of one sector, in percent"""
    sector: str
    weight: float
    benchmark_weight: float
    difference: float


def check_fill_policy(policy: str) -> str:
    if policy not in FILL_POLICIES:
        raise ConfigurationError(f"Unknown price fill policy: {policy!r}")
    return policy


def check_alignment(alignment: str) -> str:
    if alignment not in ALIGNMENTS:
        raise ConfigurationError(f"Unknown return alignment: {alignment!r}")
    return alignment


def _empty_prices() -> pd.DataFrame:
    return pd.DataFrame({
        'ticker': pd.Series(dtype=object),
        'date': pd.Series(dtype='datetime64[ns]'),
        'close': pd.Series(dtype=float),
    })


def _within(dates, start: Optional[pd.Timestamp], end: Optional[pd.Timestamp]) -> np.ndarray:
    mask = np.ones(len(dates), dtype=bool)
    if start is not None:
        mask &= np.asarray(dates >= start)
    if end is not None:
        mask &= np.asarray(dates <= end)
    return mask


def prepare_positions(positions) -> pd.DataFrame:
    """
    Return a positions snapshot with canonical tickers and every column
    the engine reads. The input is never modified.
    """
    if positions is None:
        frame = pd.DataFrame(columns=POSITION_COLUMNS)
    elif isinstance(positions, pd.DataFrame):
        frame = positions.copy()
    else:
        frame = pd.DataFrame(list(positions))

    for col in POSITION_COLUMNS:
        if col not in frame.columns:
            frame[col] = np.nan

    frame['ticker'] = frame['ticker'].map(normalize_ticker)
    for col in NUMERIC_POSITION_COLUMNS:
        frame[col] = pd.to_numeric(frame[col], errors='coerce')
    frame['company_name'] = frame['company_name'].fillna(frame['ticker'])
    frame['sector'] = frame['sector'].fillna('Unknown').replace('', 'Unknown')

    return frame.reset_index(drop=True)


class PriceAligner:
    """
    Merges per-ticker daily closes onto a unified, sorted date axis
    """

    @staticmethod
    def prepare_prices(prices: Optional[PriceInput], default_ticker: Optional[str] = None) -> pd.DataFrame:
        """
        Normalize price records to a long frame with columns [ticker, date, close]

        Accepts a long DataFrame or a {ticker: DataFrame} mapping. Records with
        a missing or non-positive close are discarded. Duplicate ticker/date
        records keep the last one in input order and are logged as a
        data-quality warning.
        """
        if prices is None:
            return _empty_prices()

        if isinstance(prices, Mapping):
            frames = []
            for ticker, history in prices.items():
                if history is None or len(history) == 0:
                    continue
                frame = pd.DataFrame(history).copy()
                frame['ticker'] = ticker
                frames.append(frame)
            if not frames:
                return _empty_prices()
            prices = pd.concat(frames, ignore_index=True)

        frame = prices.copy()
        if 'close' not in frame.columns and 'close_price' in frame.columns:
            frame = frame.rename(columns={'close_price': 'close'})
        if 'ticker' not in frame.columns and default_ticker is not None:
            frame['ticker'] = default_ticker

        if frame.empty:
            return _empty_prices()

        missing = {'ticker', 'date', 'close'} - set(frame.columns)
        if missing:
            raise ValueError(f"Price records missing columns: {', '.join(sorted(missing))}")

        frame = frame[['ticker', 'date', 'close']].copy()
        frame['ticker'] = frame['ticker'].map(normalize_ticker)
        dates = pd.to_datetime(frame['date'])
        if dates.dt.tz is not None:
            dates = dates.dt.tz_localize(None)
        frame['date'] = dates.dt.normalize()
        frame['close'] = pd.to_numeric(frame['close'], errors='coerce')

        invalid = frame['close'].isna() | (frame['close'] <= 0)
        if invalid.any():
            logger.warning(f"Discarding {int(invalid.sum())} price records without a positive close")
            frame = frame[~invalid]

        duplicated = frame.duplicated(subset=['ticker', 'date'], keep='last')
        if duplicated.any():
            dupes = frame.loc[duplicated, ['ticker', 'date']]
            sample = ', '.join(f"{t}@{d.date()}" for t, d in dupes.head(5).itertuples(index=False))
            logger.warning(f"Found {int(duplicated.sum())} duplicate price records, keeping the last: {sample}")
            frame = frame[~duplicated]

        return frame.sort_values(['ticker', 'date'], kind='mergesort').reset_index(drop=True)

    @staticmethod
    def align(
        prices: Optional[PriceInput],
        start=None,
        end=None,
        tickers: Optional[Iterable[str]] = None,
        extra_dates: Optional[Iterable] = None,
        fill_policy: str = FILL_DROP
    ) -> pd.DataFrame:
        """
        Align price histories onto one date axis

        The axis is the sorted union of every date present in any input
        series (plus extra_dates) within [start, end]. Columns are the
        requested tickers; a ticker with no record on a date is NaN under
        the "drop" policy, or carries its last known close under "ffill".

        Returns:
            DataFrame indexed by date with one close column per ticker
        """
        check_fill_policy(fill_policy)
        prepared = PriceAligner.prepare_prices(prices)
        start_ts = to_timestamp(start) if start is not None else None
        end_ts = to_timestamp(end) if end is not None else None

        if tickers is None:
            columns = list(dict.fromkeys(prepared['ticker']))
        else:
            columns = list(dict.fromkeys(normalize_ticker(t) for t in tickers if normalize_ticker(t)))
        prepared = prepared[prepared['ticker'].isin(columns)]

        axis_dates = set(prepared.loc[_within(prepared['date'], start_ts, end_ts), 'date'])
        if extra_dates is not None:
            extra = pd.DatetimeIndex([to_timestamp(d) for d in extra_dates])
            axis_dates.update(extra[_within(extra, start_ts, end_ts)])
        axis = pd.DatetimeIndex(sorted(axis_dates), name='date')

        history = prepared if end_ts is None else prepared[prepared['date'] <= end_ts]
        if history.empty:
            return pd.DataFrame(np.nan, index=axis, columns=columns, dtype=float)

        wide = history.pivot(index='date', columns='ticker', values='close')
        if fill_policy == FILL_FORWARD:
            # Closes recorded before start still seed the fill
            wide = wide.reindex(wide.index.union(axis)).sort_index().ffill()

        aligned = wide.reindex(index=axis, columns=columns).astype(float)
        aligned.index.name = 'date'
        aligned.columns.name = 'ticker'
        return aligned

    @staticmethod
    def latest_prices(prices: Optional[PriceInput], as_of=None) -> Dict[str, float]:
        """Last close per ticker on or before as_of"""
        prepared = PriceAligner.prepare_prices(prices)
        if as_of is not None:
            prepared = prepared[prepared['date'] <= to_timestamp(as_of)]
        if prepared.empty:
            return {}
        last = prepared.groupby('ticker', sort=False).tail(1)
        return {ticker: float(close) for ticker, close in zip(last['ticker'], last['close'])}

    @staticmethod
    def price_on_or_before(prices: Optional[PriceInput], ticker: str, as_of) -> Optional[float]:
        """Last close of one ticker on or before as_of, None if there is none"""
        return PriceAligner.latest_prices(prices, as_of).get(normalize_ticker(ticker))


class ValuationEngine:
    """
    Converts aligned prices and share counts into value series
    """

    @staticmethod
    def position_shares(positions) -> pd.Series:
        """Total shares per ticker; multiple lots of one ticker are summed"""
        frame = prepare_positions(positions)
        if frame.empty:
            return pd.Series(dtype=float)
        return frame.groupby('ticker', sort=False)['shares'].sum()

    @staticmethod
    def portfolio_values(aligned: pd.DataFrame, positions) -> pd.Series:
        """
        Portfolio value per date: sum of shares x close over tickers with a
        resolved close. Unresolved tickers contribute 0 on that date.
        """
        shares = ValuationEngine.position_shares(positions)
        if aligned.empty or shares.empty:
            return pd.Series(0.0, index=aligned.index, name='portfolio_value')

        prices = aligned.reindex(columns=shares.index)
        values = prices.fillna(0.0).mul(shares, axis=1).sum(axis=1)
        return values.astype(float).rename('portfolio_value')

    @staticmethod
    def coverage(aligned: pd.DataFrame, positions) -> pd.Series:
        """True on dates where at least one held ticker has a resolved close"""
        shares = ValuationEngine.position_shares(positions)
        held = shares[shares > 0].index
        if aligned.empty or len(held) == 0:
            return pd.Series(False, index=aligned.index)
        return aligned.reindex(columns=held).notna().any(axis=1)

    @staticmethod
    def benchmark_values(
        benchmark_history: Optional[PriceInput],
        axis: pd.DatetimeIndex,
        fill_policy: str = FILL_DROP,
        ticker: Optional[str] = None
    ) -> pd.Series:
        """
        Benchmark index level on the given axis (no share multiplier).
        Unresolved dates contribute 0.
        """
        check_fill_policy(fill_policy)
        bench = ValuationEngine._benchmark_frame(benchmark_history, ticker)
        if bench.empty:
            return pd.Series(0.0, index=axis, name='benchmark_value')

        series = bench.set_index('date')['close']
        if fill_policy == FILL_FORWARD:
            series = series.reindex(series.index.union(axis)).sort_index().ffill()
        values = series.reindex(axis).fillna(0.0)
        values.index.name = 'date'
        return values.astype(float).rename('benchmark_value')

    @staticmethod
    def _benchmark_frame(benchmark_history, ticker: Optional[str] = None) -> pd.DataFrame:
        bench = PriceAligner.prepare_prices(benchmark_history, default_ticker=ticker or BENCHMARK_KEY)
        if ticker is not None:
            bench = bench[bench['ticker'] == normalize_ticker(ticker)]
        elif bench['ticker'].nunique() > 1:
            raise ValueError("Benchmark history must hold a single ticker")
        return bench

    @staticmethod
    def value_series(
        positions,
        price_histories: Optional[PriceInput],
        benchmark_history: Optional[PriceInput],
        start=None,
        end=None,
        fill_policy: str = FILL_DROP,
        benchmark_ticker: Optional[str] = None
    ) -> Tuple[pd.Series, pd.Series]:
        """
        Build the portfolio and benchmark value series on one shared axis

        Dates on which no held ticker resolved a close are dropped from both
        series rather than reported as a zero portfolio value.
        """
        frame = prepare_positions(positions)
        tickers = list(dict.fromkeys(frame['ticker']))
        bench = ValuationEngine._benchmark_frame(benchmark_history, benchmark_ticker)

        aligned = PriceAligner.align(
            price_histories, start, end,
            tickers=tickers,
            extra_dates=bench['date'],
            fill_policy=fill_policy
        )
        portfolio = ValuationEngine.portfolio_values(aligned, frame)
        benchmark = ValuationEngine.benchmark_values(bench, aligned.index, fill_policy)

        covered = ValuationEngine.coverage(aligned, frame)
        if not covered.all():
            if not frame.empty:
                logger.info(f"Dropping {int((~covered).sum())} dates without any portfolio price")
            portfolio = portfolio[covered]
            benchmark = benchmark[covered]

        return portfolio, benchmark

    @staticmethod
    def refresh_weights(positions, prices: Optional[Mapping[str, float]] = None) -> pd.DataFrame:
        """
        Valuation pass: update current price, market value and weight

        Args:
            positions: Positions snapshot
            prices: Optional {ticker: latest close}; tickers without a new
                price keep their cached current price

        Returns:
            New positions frame whose weights sum to 100 (or 0 when empty)
        """
        frame = prepare_positions(positions)
        if frame.empty:
            return frame

        if prices:
            latest = {normalize_ticker(t): float(p) for t, p in prices.items() if p is not None and p > 0}
            frame['current_price'] = frame['ticker'].map(latest).fillna(frame['current_price'])

        market_value = frame['shares'] * frame['current_price']
        frame['market_value'] = market_value.fillna(frame['market_value']).fillna(0.0)

        total = frame['market_value'].sum()
        if total > 0:
            frame['weight'] = frame['market_value'] / total * 100
        else:
            frame['weight'] = 0.0
        return frame

    @staticmethod
    def weights_are_current(positions) -> bool:
        """Check that cached weights of a non-empty position set sum to 100%"""
        frame = prepare_positions(positions)
        if frame.empty:
            return True
        if frame['weight'].isna().any():
            return False
        return abs(frame['weight'].sum() - 100.0) <= WEIGHT_TOLERANCE

    @staticmethod
    def total_value(positions) -> float:
        """Current portfolio value; 0 for an empty position list"""
        frame = ValuationEngine.refresh_weights(positions)
        if frame.empty:
            return 0.0
        return float(frame['market_value'].sum())


class ReturnsCalculator:
    """
    Simple-return transforms over value series
    """

    @staticmethod
    def simple_returns(values: pd.Series) -> pd.Series:
        """
        Daily simple returns: v[i] / v[i-1] - 1

        Steps whose prior value is zero or missing are excluded.
        """
        values = pd.Series(values, dtype=float)
        previous = values.shift(1)
        valid = previous.notna() & (previous != 0) & values.notna()
        returns = values[valid] / previous[valid] - 1
        return returns.rename('return')

    @staticmethod
    def compound(returns: pd.Series, initial_value: float, start_date) -> pd.Series:
        """Rebuild a value series from its first value and its returns"""
        growth = (1 + pd.Series(returns, dtype=float)).cumprod() * float(initial_value)
        head = pd.Series([float(initial_value)], index=[start_date])
        values = pd.concat([head, growth])
        return values.rename('value')

    @staticmethod
    def percent_change(values: pd.Series) -> pd.Series:
        """
        Percent change against the first positive value; points before it
        (and the first point itself) are 0
        """
        values = pd.Series(values, dtype=float)
        positive = values.to_numpy() > 0
        if not positive.any():
            return pd.Series(0.0, index=values.index, name='pct_change')

        first = int(np.argmax(positive))
        base = values.iloc[first]
        change = (values - base) / base * 100
        change.iloc[:first + 1] = 0.0
        return change.fillna(0.0).rename('pct_change')


class RiskCalculator:
    """
    Static methods for risk metric calculations
    """

    @staticmethod
    def pair_returns(
        portfolio_returns: pd.Series,
        benchmark_returns: pd.Series,
        alignment: str = ALIGN_INDEX
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Pair portfolio and benchmark returns

        "index" truncates both to the shorter length from position 0 without
        looking at dates; "date" keeps only dates present in both.
        """
        check_alignment(alignment)
        if alignment == ALIGN_DATE:
            joined = pd.concat(
                [pd.Series(portfolio_returns, dtype=float).rename('p'),
                 pd.Series(benchmark_returns, dtype=float).rename('b')],
                axis=1, join='inner'
            ).dropna()
            return joined['p'].to_numpy(), joined['b'].to_numpy()

        portfolio = np.asarray(portfolio_returns, dtype=float)
        benchmark = np.asarray(benchmark_returns, dtype=float)
        n = min(len(portfolio), len(benchmark))
        return portfolio[:n], benchmark[:n]

    @staticmethod
    def volatility(returns, periods_per_year: int = TRADING_DAYS_PER_YEAR) -> Optional[float]:
        """
        Annualized population standard deviation of daily returns
        """
        arr = np.asarray(returns, dtype=float)
        if len(arr) < 2:
            return None
        return float(np.std(arr) * np.sqrt(periods_per_year))

    @staticmethod
    def beta(
        portfolio_returns,
        benchmark_returns,
        alignment: str = ALIGN_INDEX
    ) -> Optional[float]:
        """
        Beta = population Cov(Rp, Rb) / population Var(Rb)

        None when fewer than 2 pairs or the benchmark is constant.
        """
        portfolio, benchmark = RiskCalculator.pair_returns(
            pd.Series(portfolio_returns, dtype=float),
            pd.Series(benchmark_returns, dtype=float),
            alignment
        )
        if len(portfolio) < 2:
            return None

        variance = np.var(benchmark)
        if not np.isfinite(variance) or variance <= ZERO_VARIANCE:
            return None

        covariance = np.mean((portfolio - portfolio.mean()) * (benchmark - benchmark.mean()))
        return float(covariance / variance)

    @staticmethod
    def sharpe_ratio(
        returns,
        risk_free_rate: float,
        periods_per_year: int = TRADING_DAYS_PER_YEAR
    ) -> Optional[float]:
        """
        Sharpe = (mean daily return - Rf / 252) / daily std, annualized by sqrt(252)
        """
        arr = np.asarray(returns, dtype=float)
        if len(arr) < 2:
            return None

        std = np.std(arr)
        if std ** 2 <= ZERO_VARIANCE:
            return None

        excess = arr.mean() - risk_free_rate / periods_per_year
        return float(excess / std * np.sqrt(periods_per_year))

    @staticmethod
    def drawdown_series(values: pd.Series) -> pd.Series:
        """Fractional decline from the running peak at each date"""
        values = pd.Series(values, dtype=float).dropna()
        peaks = values.cummax()
        drawdown = ((peaks - values) / peaks).where(peaks > 0, 0.0)
        return drawdown.rename('drawdown')

    @staticmethod
    def max_drawdown(values) -> Optional[float]:
        """
        Largest (peak - value) / peak seen walking the series in date order
        """
        arr = np.asarray(values, dtype=float)
        arr = arr[~np.isnan(arr)]
        if len(arr) == 0:
            return None

        peaks = np.maximum.accumulate(arr)
        with np.errstate(divide='ignore', invalid='ignore'):
            drawdowns = np.where(peaks > 0, (peaks - arr) / peaks, 0.0)
        return float(max(drawdowns.max(), 0.0))


class AllocationAnalyzer:
    """
    Sector weights of the portfolio against a benchmark sector table
    """

    @staticmethod
    def sector_weights(positions) -> pd.Series:
        """Summed weight percent per sector, in first-seen order"""
        frame = prepare_positions(positions)
        if frame.empty:
            return pd.Series(dtype=float)
        return frame.groupby('sector', sort=False)['weight'].sum()

    @staticmethod
    def compare(
        sector_weights: pd.Series,
        benchmark_sector_table: Mapping[str, float]
    ) -> List[SectorAllocation]:
        allocations = []
        for sector, weight in sector_weights.items():
            benchmark_weight = float(benchmark_sector_table.get(sector, 0.0))
            allocations.append(SectorAllocation(
                sector=sector,
                weight=float(weight),
                benchmark_weight=benchmark_weight,
                difference=float(weight) - benchmark_weight,
            ))
        allocations.sort(key=lambda a: a.weight, reverse=True)
        return allocations


def risk_metrics_from_values(
    portfolio_values: pd.Series,
    benchmark_values: pd.Series,
    risk_free_rate: float,
    alignment: str = ALIGN_INDEX
) -> RiskMetrics:
    """
    Risk statistics from already valued portfolio and benchmark series
    """
    portfolio_returns = ReturnsCalculator.simple_returns(portfolio_values)
    benchmark_returns = ReturnsCalculator.simple_returns(benchmark_values)

    if len(portfolio_returns) == 0:
        return RiskMetrics(
            sharpe_ratio=None,
            beta=None,
            standard_deviation_pct=None,
            max_drawdown=None,
            risk_free_rate=float(risk_free_rate),
            observations=0,
        )

    if alignment == ALIGN_INDEX and len(portfolio_returns) != len(benchmark_returns):
        logger.warning(
            f"Portfolio has {len(portfolio_returns)} returns and benchmark {len(benchmark_returns)}; "
            "pairing by position, dates may not line up"
        )

    volatility = RiskCalculator.volatility(portfolio_returns)
    return RiskMetrics(
        sharpe_ratio=RiskCalculator.sharpe_ratio(portfolio_returns, risk_free_rate),
        beta=RiskCalculator.beta(portfolio_returns, benchmark_returns, alignment),
        standard_deviation_pct=volatility * 100 if volatility is not None else None,
        max_drawdown=RiskCalculator.max_drawdown(portfolio_values),
        risk_free_rate=float(risk_free_rate),
        observations=len(portfolio_returns),
    )


def compute_risk_metrics(
    positions,
    price_histories: Optional[PriceInput],
    benchmark_history: Optional[PriceInput],
    risk_free_rate: Optional[float],
    start=None,
    end=None,
    fill_policy: Optional[str] = None,
    alignment: Optional[str] = None,
    benchmark_ticker: Optional[str] = None
) -> RiskMetrics:
    """
    Sharpe ratio, beta, annualized standard deviation and maximum drawdown

    Args:
        positions: Positions snapshot (ticker, shares, ...)
        price_histories: Long frame [ticker, date, close] or {ticker: frame}
        benchmark_history: Frame [date, close] of the benchmark
        risk_free_rate: Annual risk-free rate as a fraction (0.05 = 5%)
        start, end: Optional date range of the analysis
        fill_policy: "drop" (default) or "ffill"
        alignment: "index" (default) or "date" pairing of return series

    Returns:
        RiskMetrics; fields are None where the sample is too small
    """
    if risk_free_rate is None or pd.isna(risk_free_rate):
        raise ConfigurationError("Missing risk-free rate")
    fill_policy = check_fill_policy(fill_policy or PRICE_FILL_POLICY)
    alignment = check_alignment(alignment or RETURN_ALIGNMENT)

    portfolio_values, benchmark_values = ValuationEngine.value_series(
        positions, price_histories, benchmark_history,
        start=start, end=end,
        fill_policy=fill_policy,
        benchmark_ticker=benchmark_ticker
    )
    return risk_metrics_from_values(portfolio_values, benchmark_values, risk_free_rate, alignment)


def compute_sector_allocation(
    positions,
    benchmark_sector_table: Optional[Mapping[str, float]] = None
) -> List[SectorAllocation]:
    """
    Group positions by sector and compare with the benchmark sector table

    Weights are taken as given; refreshing them is the job of the valuation
    pass. Sectors only present in the benchmark table are not emitted.
    """
    frame = prepare_positions(positions)
    if frame.empty:
        return []

    if not ValuationEngine.weights_are_current(frame):
        logger.warning(f"Position weights sum to {frame['weight'].sum():.2f}%, expected 100%")

    table = BENCHMARK_SECTOR_WEIGHTS if benchmark_sector_table is None else benchmark_sector_table
    return AllocationAnalyzer.compare(AllocationAnalyzer.sector_weights(frame), table)
