"""
Report Generation
Assembles the monthly report summary from the engine outputs and writes
the narrative commentary with OpenAI
"""

import logging
from dataclasses import asdict, dataclass
from typing import List, Mapping, Optional, Tuple

import pandas as pd
from openai import OpenAI

from calculations import (
    PriceAligner, RiskMetrics, SectorAllocation, ValuationEngine, check_alignment,
    check_fill_policy, compute_sector_allocation,
)
from config import (
    DEFAULT_TOP_N, OPENAI_API_KEY, OPENAI_MODEL, PRICE_FILL_POLICY, RETURN_ALIGNMENT,
)
from exceptions import ConfigurationError
from performance import (
    RISK_WINDOW, ROLLING_WINDOWS, PerformanceWindow, PeriodComparison, TopMover,
    compute_top_movers, compute_trailing_risk, period_comparisons, resolve_window,
)
from utils import format_currency, format_percentage, normalize_ticker, to_timestamp

logger = logging.getLogger(__name__)

FAILED_COMMENTARY = "Commentary generation failed"
TOP_HOLDINGS = 10


@dataclass
class ReportSummary:
    date: str
    portfolio_value: float
    benchmark_value: float
    monthly_performance: PeriodComparison
    year_to_date_performance: PeriodComparison
    rolling_returns: List[PeriodComparison]
    top_gainers: List[TopMover]
    top_losers: List[TopMover]
    sector_allocation: List[SectorAllocation]
    top_holdings: List[dict]
    risk_metrics: RiskMetrics
    commentary: str = ''
    benchmark_ticker: str = ''
    position_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def validate_settings(settings: Mapping) -> Tuple[str, float]:
    """
    Benchmark ticker and risk-free rate from the settings record

    Raises:
        ConfigurationError: either value is missing
    """
    benchmark_ticker = normalize_ticker(settings.get('benchmark_ticker'))
    if not benchmark_ticker:
        raise ConfigurationError("Missing benchmark ticker")

    risk_free_rate = settings.get('risk_free_rate')
    if risk_free_rate is None or pd.isna(risk_free_rate):
        raise ConfigurationError("Missing risk-free rate")

    return benchmark_ticker, float(risk_free_rate)


def report_due(settings: Mapping, today=None) -> bool:
    """True on the configured generation day if no report ran today"""
    today = to_timestamp(today) if today is not None else pd.Timestamp.today().normalize()
    day = settings.get('report_generation_day') or 1
    if today.day != int(day):
        return False
    last = settings.get('last_report_generation')
    return last is None or to_timestamp(last) != today


def _top_holdings(positions: pd.DataFrame, limit: int = TOP_HOLDINGS) -> List[dict]:
    if positions.empty:
        return []
    top = positions.sort_values('weight', ascending=False, kind='mergesort').head(limit)
    return [
        {
            'ticker': row.ticker,
            'company_name': row.company_name,
            'sector': row.sector,
            'shares': float(row.shares),
            'market_value': float(row.market_value),
            'weight': float(row.weight),
        }
        for row in top.itertuples(index=False)
    ]


def build_report_summary(
    positions,
    price_histories,
    benchmark_history,
    risk_free_rate: float,
    today=None,
    top_n: int = DEFAULT_TOP_N,
    benchmark_sector_table: Optional[Mapping[str, float]] = None,
    fill_policy: Optional[str] = None,
    alignment: Optional[str] = None,
    benchmark_ticker: str = ''
) -> ReportSummary:
    """
    Assemble every figure of a report; no I/O

    Positions are revalued from the latest closes first, so weights used
    for allocation and holdings satisfy the 100% invariant.
    """
    if risk_free_rate is None or pd.isna(risk_free_rate):
        raise ConfigurationError("Missing risk-free rate")
    fill_policy = check_fill_policy(fill_policy or PRICE_FILL_POLICY)
    alignment = check_alignment(alignment or RETURN_ALIGNMENT)
    today = to_timestamp(today) if today is not None else pd.Timestamp.today().normalize()

    latest = PriceAligner.latest_prices(price_histories, as_of=today)
    frame = ValuationEngine.refresh_weights(positions, latest)
    portfolio_value = float(frame['market_value'].sum()) if not frame.empty else 0.0

    bench_latest = PriceAligner.latest_prices(
        PriceAligner.prepare_prices(benchmark_history, default_ticker=benchmark_ticker or 'BENCHMARK'),
        as_of=today,
    )
    benchmark_value = next(iter(bench_latest.values()), 0.0)

    start, _ = resolve_window(RISK_WINDOW, today)
    portfolio_values, benchmark_values = ValuationEngine.value_series(
        frame, price_histories, benchmark_history,
        start=start, end=today,
        fill_policy=fill_policy,
        benchmark_ticker=benchmark_ticker or None,
    )

    monthly, ytd = period_comparisons(
        portfolio_values, benchmark_values,
        [PerformanceWindow.ONE_MONTH, PerformanceWindow.YEAR_TO_DATE],
        today,
    )
    movers = compute_top_movers(frame, price_histories, PerformanceWindow.ONE_MONTH, top_n, today)

    return ReportSummary(
        date=f"{today:%Y-%m-%d}",
        portfolio_value=portfolio_value,
        benchmark_value=float(benchmark_value),
        monthly_performance=monthly,
        year_to_date_performance=ytd,
        rolling_returns=period_comparisons(portfolio_values, benchmark_values, ROLLING_WINDOWS, today),
        top_gainers=movers.gainers,
        top_losers=movers.losers,
        sector_allocation=compute_sector_allocation(frame, benchmark_sector_table),
        top_holdings=_top_holdings(frame),
        risk_metrics=compute_trailing_risk(
            frame, price_histories, benchmark_history, risk_free_rate,
            today=today,
            fill_policy=fill_policy,
            alignment=alignment,
            benchmark_ticker=benchmark_ticker or None,
        ),
        benchmark_ticker=benchmark_ticker,
        position_count=len(frame),
    )


def _pct(value: Optional[float]) -> str:
    return format_percentage(value, with_sign=True) if value is not None else 'n/a'


def _num(value: Optional[float]) -> str:
    return f"{value:.2f}" if value is not None else 'n/a'


def build_narrative_prompt(summary: ReportSummary) -> str:
    """Prompt describing the month's figures for the commentary model"""
    gainers = ', '.join(f"{m.ticker} ({_pct(m.gain_loss_percent)})" for m in summary.top_gainers) or 'none'
    losers = ', '.join(f"{m.ticker} ({_pct(m.gain_loss_percent)})" for m in summary.top_losers) or 'none'
    sectors = ', '.join(
        f"{s.sector} {s.weight:.1f}% vs benchmark {s.benchmark_weight:.1f}%"
        for s in summary.sector_allocation
    ) or 'none'
    risk = summary.risk_metrics
    drawdown = risk.max_drawdown * 100 if risk.max_drawdown is not None else None

    return f"""Write a concise monthly performance commentary (3 short paragraphs) for a student-managed
investment portfolio, as of {summary.date}.

Portfolio value: {format_currency(summary.portfolio_value)} across {summary.position_count} positions.
Monthly return: portfolio {_pct(summary.monthly_performance.portfolio_return)}, benchmark {summary.benchmark_ticker} {_pct(summary.monthly_performance.benchmark_return)}.
Year to date: portfolio {_pct(summary.year_to_date_performance.portfolio_return)}, benchmark {_pct(summary.year_to_date_performance.benchmark_return)}.
Top gainers: {gainers}.
Top losers: {losers}.
Sector allocation: {sectors}.
Risk: Sharpe ratio {_num(risk.sharpe_ratio)}, beta {_num(risk.beta)}, annualized volatility {_pct(risk.standard_deviation_pct)}, max drawdown {_pct(drawdown)}.

Explain what drove performance relative to the benchmark, note the sector tilts, and comment on risk.
Use a professional, educational tone and do not give investment advice."""


def generate_narrative(
    summary: ReportSummary,
    client=None,
    model: str = OPENAI_MODEL,
    api_key: Optional[str] = None
) -> str:
    """
    Narrative commentary for a report

    Never raises: a missing key or any API error yields a failure message.
    """
    if client is None:
        key = api_key if api_key is not None else OPENAI_API_KEY
        if not key:
            logger.warning("OpenAI API key not configured, skipping commentary")
            return f"{FAILED_COMMENTARY}: missing OpenAI API key"
        client = OpenAI(api_key=key)

    try:
        response = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": "You are a portfolio analyst writing monthly client commentary."},
                {"role": "user", "content": build_narrative_prompt(summary)},
            ],
            max_tokens=500,
            temperature=0.7,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            return f"{FAILED_COMMENTARY}: empty response"
        return content.strip()

    except Exception as e:
        logger.error(f"Error generating commentary: {e}")
        return f"{FAILED_COMMENTARY}: {e}"
