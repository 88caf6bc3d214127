"""
Visualization Module
Creates the charts of the portfolio dashboard and its reports
"""

from typing import List, Optional, Sequence

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from plotly.subplots import make_subplots

from calculations import RiskCalculator, RiskMetrics, SectorAllocation
from performance import PerformanceResult, TopMover


# Color palette for consistent styling
COLORS = {
    'primary': '#2563eb',      # Blue
    'secondary': '#7c3aed',    # Purple
    'success': '#10b981',      # Green
    'danger': '#ef4444',       # Red
    'warning': '#f59e0b',      # Amber
    'neutral': '#6b7280',      # Gray
    'background': '#0f172a',   # Dark blue-gray
    'surface': '#1e293b',      # Lighter dark
    'text': '#f1f5f9',         # Light text
    'muted': '#94a3b8',        # Muted text
}


def apply_chart_styling(fig: go.Figure) -> go.Figure:
    """Apply consistent styling to a Plotly figure"""
    fig.update_layout(
        font=dict(family='Inter, system-ui, sans-serif', color=COLORS['text']),
        paper_bgcolor='rgba(0,0,0,0)',
        plot_bgcolor='rgba(0,0,0,0)',
        margin=dict(l=40, r=40, t=60, b=40),
        xaxis=dict(
            gridcolor='rgba(148, 163, 184, 0.1)',
            zerolinecolor='rgba(148, 163, 184, 0.2)',
            tickfont=dict(size=11),
        ),
        yaxis=dict(
            gridcolor='rgba(148, 163, 184, 0.1)',
            zerolinecolor='rgba(148, 163, 184, 0.2)',
            tickfont=dict(size=11),
        ),
        legend=dict(bgcolor='rgba(0,0,0,0)', font=dict(size=11)),
        hoverlabel=dict(bgcolor=COLORS['surface'], font_size=12),
        hovermode='x unified',
    )
    return fig


def _empty_figure(title: str, message: str = 'No data for this period') -> go.Figure:
    fig = go.Figure()
    fig.add_annotation(
        text=message, x=0.5, y=0.5, xref='paper', yref='paper',
        showarrow=False, font=dict(size=14, color=COLORS['muted'])
    )
    fig.update_layout(
        title=dict(text=title, font=dict(size=16)),
        xaxis=dict(visible=False),
        yaxis=dict(visible=False),
    )
    return apply_chart_styling(fig)


def plot_performance(
    result: PerformanceResult,
    benchmark_name: str = 'Benchmark',
    title: str = 'Portfolio vs Benchmark'
) -> go.Figure:
    """
    Percent change of portfolio and benchmark since the window start
    """
    if result.is_empty:
        return _empty_figure(title)

    fig = go.Figure()

    fig.add_trace(go.Scatter(
        x=result.portfolio_pct_change.index,
        y=result.portfolio_pct_change.values,
        name='Portfolio',
        line=dict(color=COLORS['primary'], width=2.5),
        fill='tozeroy',
        fillcolor='rgba(37, 99, 235, 0.1)',
        hovertemplate='%{y:.2f}%<extra>Portfolio</extra>'
    ))

    if (result.benchmark_values > 0).any():
        fig.add_trace(go.Scatter(
            x=result.benchmark_pct_change.index,
            y=result.benchmark_pct_change.values,
            name=benchmark_name,
            line=dict(color=COLORS['neutral'], width=1.5, dash='dash'),
            hovertemplate='%{y:.2f}%<extra>' + benchmark_name + '</extra>'
        ))

    fig.add_hline(y=0, line_dash='solid', line_color='rgba(148, 163, 184, 0.3)', line_width=1)

    fig.update_layout(
        title=dict(text=title, font=dict(size=16)),
        yaxis_title='Change (%)',
        showlegend=True,
        legend=dict(
            orientation='h',
            yanchor='bottom',
            y=1.02,
            xanchor='right',
            x=1
        ),
    )

    return apply_chart_styling(fig)


def plot_drawdown(values: pd.Series, title: str = 'Drawdown') -> go.Figure:
    """
    Decline from the running peak of a value series
    """
    drawdown = RiskCalculator.drawdown_series(values) * -100
    if drawdown.empty:
        return _empty_figure(title)

    fig = go.Figure()

    fig.add_trace(go.Scatter(
        x=drawdown.index,
        y=drawdown.values,
        fill='tozeroy',
        fillcolor='rgba(239, 68, 68, 0.2)',
        line=dict(color=COLORS['danger'], width=1.5),
        name='Drawdown',
        hovertemplate='%{y:.2f}%<extra></extra>'
    ))

    min_dd = drawdown.min()
    if min_dd < 0:
        fig.add_annotation(
            x=drawdown.idxmin(),
            y=min_dd,
            text=f'Max DD: {min_dd:.1f}%',
            showarrow=True,
            arrowhead=2,
            arrowcolor=COLORS['danger'],
            font=dict(color=COLORS['text'], size=11),
            bgcolor=COLORS['surface'],
            borderpad=4,
        )

    fig.update_layout(
        title=dict(text=title, font=dict(size=16)),
        yaxis_title='Drawdown (%)',
        showlegend=False,
    )

    return apply_chart_styling(fig)


def plot_sector_allocation(
    allocations: Sequence[SectorAllocation],
    title: str = 'Sector Allocation vs Benchmark'
) -> go.Figure:
    """
    Grouped bars of portfolio and benchmark weight per sector
    """
    if not allocations:
        return _empty_figure(title, 'No positions')

    sectors = [a.sector for a in allocations]

    fig = go.Figure()
    fig.add_trace(go.Bar(
        x=sectors,
        y=[a.weight for a in allocations],
        name='Portfolio',
        marker=dict(color=COLORS['primary']),
        hovertemplate='<b>%{x}</b><br>Portfolio: %{y:.1f}%<extra></extra>'
    ))
    fig.add_trace(go.Bar(
        x=sectors,
        y=[a.benchmark_weight for a in allocations],
        name='Benchmark',
        marker=dict(color=COLORS['neutral']),
        hovertemplate='<b>%{x}</b><br>Benchmark: %{y:.1f}%<extra></extra>'
    ))

    fig.update_layout(
        title=dict(text=title, font=dict(size=16)),
        barmode='group',
        yaxis_title='Weight (%)',
        legend=dict(orientation='h', yanchor='bottom', y=1.02, xanchor='right', x=1),
    )

    return apply_chart_styling(fig)


def plot_holdings_allocation(
    holdings: pd.DataFrame,
    value_column: str = 'market_value',
    title: str = 'Holdings'
) -> go.Figure:
    """
    Donut of market value by ticker; holdings under 2% are grouped as Others
    """
    holdings = holdings[holdings[value_column].fillna(0) > 0]
    if holdings.empty:
        return _empty_figure(title, 'No positions')

    total_val = holdings[value_column].sum()
    share = holdings[value_column] / total_val * 100

    main = holdings[share >= 2.0]
    others = holdings[share < 2.0]
    labels = list(main['ticker'])
    values = list(main[value_column])
    if not others.empty:
        labels.append('Others')
        values.append(others[value_column].sum())

    fig = go.Figure(data=[go.Pie(
        labels=labels,
        values=values,
        hole=0.6,
        textinfo='label+percent',
        textposition='outside',
        marker=dict(
            colors=px.colors.qualitative.Prism,
            line=dict(color=COLORS['background'], width=2)
        ),
        hovertemplate='<b>%{label}</b><br>Value: $%{value:,.2f}<extra></extra>'
    )])

    fig.update_layout(
        title=dict(text=title, font=dict(size=16)),
        showlegend=False,
        annotations=[dict(
            text=f'Total Value<br><b>${total_val:,.0f}</b>',
            x=0.5, y=0.5, showarrow=False,
            font=dict(size=16, color=COLORS['text'])
        )]
    )

    return apply_chart_styling(fig)


def plot_top_movers(
    movers: List[TopMover],
    title: str = 'Top Movers'
) -> go.Figure:
    """
    Horizontal bars of percent change per mover
    """
    if not movers:
        return _empty_figure(title, 'No positions')

    ordered = sorted(movers, key=lambda m: m.gain_loss_percent)
    colors = [COLORS['success'] if m.gain_loss_percent >= 0 else COLORS['danger'] for m in ordered]

    fig = go.Figure(data=[go.Bar(
        y=[m.ticker for m in ordered],
        x=[m.gain_loss_percent for m in ordered],
        orientation='h',
        marker=dict(color=colors),
        text=[f'{m.gain_loss_percent:+.1f}%' for m in ordered],
        textposition='outside',
        textfont=dict(size=11),
        customdata=[[m.gain_loss_amount, m.contribution] for m in ordered],
        hovertemplate='<b>%{y}</b><br>Return: %{x:.2f}%'
                      '<br>P/L: $%{customdata[0]:,.2f}'
                      '<br>Contribution: %{customdata[1]:.2f}%<extra></extra>'
    )])

    fig.add_vline(x=0, line_dash='solid', line_color='rgba(148, 163, 184, 0.5)', line_width=1)

    fig.update_layout(
        title=dict(text=title, font=dict(size=16)),
        xaxis_title='Return (%)',
        yaxis_title='',
        showlegend=False,
        height=max(300, len(ordered) * 40),
    )

    return apply_chart_styling(fig)


# (label, color, axis range, colored bands, number format)
RISK_GAUGES = [
    ('Sharpe Ratio', 'primary', [-1, 3], [(-1, 0, 'danger'), (0, 1, 'warning'), (1, 3, 'success')], '.2f'),
    ('Beta', 'secondary', [0, 2], [(0, 0.8, 'success'), (0.8, 1.2, 'warning'), (1.2, 2, 'danger')], '.2f'),
    ('Volatility %', 'warning', [0, 50], [(0, 15, 'success'), (15, 25, 'warning'), (25, 50, 'danger')], '.1f'),
    ('Max Drawdown %', 'danger', [0, 50], [(0, 10, 'success'), (10, 20, 'warning'), (20, 50, 'danger')], '.1f'),
]

BAND_COLORS = {
    'success': 'rgba(34, 197, 94, 0.3)',
    'warning': 'rgba(251, 191, 36, 0.3)',
    'danger': 'rgba(239, 68, 68, 0.3)',
}


def _risk_gauge_values(metrics: RiskMetrics) -> List[Optional[float]]:
    drawdown = metrics.max_drawdown * 100 if metrics.max_drawdown is not None else None
    return [metrics.sharpe_ratio, metrics.beta, metrics.standard_deviation_pct, drawdown]


def plot_risk_metrics(metrics: RiskMetrics, title: str = 'Risk Metrics') -> go.Figure:
    """
    Gauges for Sharpe ratio, beta, volatility and max drawdown

    Unavailable statistics render as an empty gauge labelled n/a.
    """
    fig = make_subplots(
        rows=2, cols=2,
        specs=[[{'type': 'indicator'}, {'type': 'indicator'}],
               [{'type': 'indicator'}, {'type': 'indicator'}]],
        vertical_spacing=0.3,
        horizontal_spacing=0.1
    )

    for i, (gauge, value) in enumerate(zip(RISK_GAUGES, _risk_gauge_values(metrics))):
        label, color, axis_range, bands, number_format = gauge
        suffix = '%' if label.endswith('%') else ''
        fig.add_trace(go.Indicator(
            mode='gauge+number' if value is not None else 'gauge',
            value=value if value is not None else axis_range[0],
            title={'text': label if value is not None else f'{label} (n/a)', 'font': {'size': 14}},
            gauge={
                'axis': {'range': axis_range, 'tickwidth': 1},
                'bar': {'color': COLORS[color]},
                'steps': [{'range': [lo, hi], 'color': BAND_COLORS[band]} for lo, hi, band in bands],
            },
            number={'font': {'size': 24}, 'suffix': suffix, 'valueformat': number_format}
        ), row=i // 2 + 1, col=i % 2 + 1)

    fig.update_layout(
        title=dict(text=title, font=dict(size=16)),
        height=400,
    )

    return apply_chart_styling(fig)
