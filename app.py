"""
Portfolio Analytics Dashboard
Main Streamlit Application

Performance, risk and allocation of a managed portfolio against its
benchmark, with an admin area for positions, settings and reports.
"""

import logging

import pandas as pd
import streamlit as st

from calculations import ValuationEngine, compute_sector_allocation
from config import DEFAULT_TOP_N, LOG_LEVEL
from data_fetcher import DataFetcher, collect_price_histories, get_risk_free_rate
from exceptions import ConfigurationError, PortfolioAnalyticsError, UpstreamFailure
from jobs import generate_report, update_prices
from models import init_db
from performance import (
    RISK_WINDOW, ROLLING_WINDOWS, PerformanceWindow, compute_performance, compute_top_movers,
    compute_trailing_risk, movers_frame, period_comparisons, resolve_window,
)
from reporting import validate_settings
from store import RecordStore
from utils import (
    export_positions_csv, export_positions_template, format_currency, format_number,
    format_percentage, get_color_for_value, parse_positions_csv, validate_ticker_format,
)
from visualizations import (
    plot_drawdown, plot_holdings_allocation, plot_performance, plot_risk_metrics,
    plot_sector_allocation, plot_top_movers,
)

logging.basicConfig(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

# Page config
st.set_page_config(
    page_title="Portfolio Analytics Dashboard",
    page_icon="📊",
    layout="wide",
    initial_sidebar_state="expanded"
)

# Custom CSS for dark theme styling
st.markdown("""
<style>
    [data-testid="stSidebar"] {
        background-color: #1e293b;
    }

    h1, h2, h3 {
        color: #f1f5f9 !important;
    }

    [data-testid="stMetricValue"] {
        font-size: 1.6rem !important;
        color: #f1f5f9 !important;
    }

    .metric-card {
        background: linear-gradient(135deg, #1e293b 0%, #334155 100%);
        padding: 1.2rem;
        border-radius: 12px;
        border: 1px solid rgba(148, 163, 184, 0.1);
        box-shadow: 0 4px 6px -1px rgba(0, 0, 0, 0.3);
    }

    .metric-value {
        font-size: 1.6rem;
        font-weight: 700;
        margin: 0;
    }

    .metric-label {
        font-size: 0.875rem;
        color: #94a3b8;
        margin-top: 0.25rem;
    }

    .stTabs [data-baseweb="tab"] {
        background-color: #1e293b;
        border-radius: 8px;
        color: #94a3b8;
        padding: 10px 20px;
    }

    .stTabs [aria-selected="true"] {
        background-color: #2563eb !important;
        color: #f1f5f9 !important;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}
</style>
""", unsafe_allow_html=True)


@st.cache_resource
def get_store() -> RecordStore:
    init_db()
    return RecordStore()


# Initialize session state
if 'is_admin' not in st.session_state:
    st.session_state.is_admin = False
if 'fetcher' not in st.session_state:
    st.session_state.fetcher = DataFetcher()

store = get_store()


def create_metric_card(value: str, label: str, color: str = '#f1f5f9'):
    """Create a custom metric card"""
    st.markdown(f"""
    <div class="metric-card">
        <p class="metric-value" style="color: {color};">{value}</p>
        <p class="metric-label">{label}</p>
    </div>
    """, unsafe_allow_html=True)


def load_histories(positions: pd.DataFrame, benchmark_ticker: str, start, end):
    """Read stored closes for the held tickers and the benchmark"""
    price_histories = collect_price_histories(store.fetch_price_history, positions['ticker'], start, end)
    benchmark_history = store.fetch_benchmark_history(benchmark_ticker, start, end)
    return price_histories, benchmark_history


# =============================================================================
# SIDEBAR
# =============================================================================

with st.sidebar:
    st.markdown("## 📊 Portfolio Dashboard")
    st.markdown("---")

    page = st.radio("Page", ["📈 Dashboard", "🔐 Admin"], index=0)

    st.markdown("### Time Period")
    window_options = [w.value for w in PerformanceWindow] + ['Custom']
    window_choice = st.selectbox("Analysis Period", window_options, index=window_options.index('1M'))

    if window_choice == 'Custom':
        today = pd.Timestamp.today().normalize()
        custom_start = st.date_input("Start", value=(today - pd.DateOffset(months=3)).date())
        custom_end = st.date_input("End", value=today.date())
        window = (custom_start, custom_end)
    else:
        window = PerformanceWindow(window_choice)

    top_n = st.slider("Top Movers", min_value=1, max_value=10, value=DEFAULT_TOP_N)

    st.markdown("---")
    st.markdown("### Admin Access")
    if st.session_state.is_admin:
        st.success("Signed in as admin")
        if st.button("Sign out", use_container_width=True):
            st.session_state.is_admin = False
            st.rerun()
    else:
        password = st.text_input("Password", type="password")
        if st.button("Sign in", use_container_width=True):
            if store.check_admin_password(password):
                st.session_state.is_admin = True
                st.rerun()
            else:
                st.error("Incorrect password")


# =============================================================================
# SETTINGS
# =============================================================================

try:
    settings = store.get_settings()
    benchmark_ticker, risk_free_rate = validate_settings(settings)
except (ConfigurationError, UpstreamFailure) as e:
    logger.error(f"Dashboard unavailable: {e}")
    st.error(f"Dashboard unavailable: {e}")
    st.stop()


# =============================================================================
# ADMIN
# =============================================================================

def render_admin():
    st.markdown("# 🔐 Administration")

    if not st.session_state.is_admin:
        st.info("Sign in from the sidebar to manage positions and settings.")
        return

    positions_tab, import_tab, settings_tab, jobs_tab = st.tabs([
        "📋 Positions", "📁 Import / Export", "⚙️ Settings", "🔄 Jobs"
    ])

    with positions_tab:
        positions = store.get_positions()
        if positions.empty:
            st.info("No positions yet.")
        else:
            st.dataframe(
                positions[['id', 'ticker', 'company_name', 'shares', 'purchase_date',
                           'purchase_price', 'sector', 'current_price', 'weight']],
                use_container_width=True,
                hide_index=True
            )

            position_id = st.selectbox(
                "Position",
                positions['id'].tolist(),
                format_func=lambda i: positions.loc[positions['id'] == i, 'ticker'].iloc[0]
            )
            selected = positions[positions['id'] == position_id].iloc[0]

            with st.form("edit_position"):
                col1, col2 = st.columns([1, 1])
                with col1:
                    new_shares = st.number_input("Shares", min_value=0.0, step=1.0, value=float(selected['shares']))
                    new_price = st.number_input(
                        "Purchase Price ($)", min_value=0.0, step=0.01, value=float(selected['purchase_price'])
                    )
                with col2:
                    new_sector = st.text_input("Sector", value=selected['sector'] or 'Unknown')
                    new_notes = st.text_input("Notes", value=selected['notes'] or '')

                save, delete = st.columns(2)
                if save.form_submit_button("💾 Save Changes"):
                    if new_shares <= 0 or new_price <= 0:
                        st.error("Shares and purchase price must be positive")
                    else:
                        store.update_position(
                            int(position_id), shares=new_shares, purchase_price=new_price,
                            sector=new_sector or 'Unknown', notes=new_notes,
                        )
                        st.success("Position updated")
                        st.rerun()
                if delete.form_submit_button("🗑️ Delete Position"):
                    store.delete_position(int(position_id))
                    st.success("Position deleted")
                    st.rerun()

        st.markdown("### Add Position")
        with st.form("add_position"):
            ticker = st.text_input("Ticker Symbol", placeholder="AAPL")
            shares = st.number_input("Shares", min_value=0.0, step=1.0)
            price = st.number_input("Purchase Price ($)", min_value=0.0, step=0.01)
            purchase_date = st.date_input("Purchase Date", value=pd.Timestamp.today().date())
            company_name = st.text_input("Company Name (blank to look up)")
            sector = st.text_input("Sector (blank to look up)")
            notes = st.text_input("Notes")

            if st.form_submit_button("Add Position"):
                if not validate_ticker_format(ticker):
                    st.error(f"Invalid ticker: {ticker}")
                elif shares <= 0 or price <= 0:
                    st.error("Shares and purchase price must be positive")
                else:
                    if not company_name or not sector:
                        info = st.session_state.fetcher.fetch_ticker_info(ticker)
                        company_name = company_name or info.get('name')
                        sector = sector or info.get('sector')
                    store.add_position(ticker, shares, purchase_date, price, company_name, sector, notes)
                    st.success(f"Added {ticker.upper()}")
                    st.rerun()

    with import_tab:
        st.markdown("### Import Positions")
        st.caption("Importing replaces every existing position.")
        uploaded_file = st.file_uploader("Choose a CSV file", type=['csv'])
        if uploaded_file and st.button("📁 Replace Positions"):
            try:
                imported = parse_positions_csv(uploaded_file.getvalue())
                count = store.replace_positions(imported)
                st.success(f"Imported {count} positions")
            except ValueError as e:
                st.error(f"Error parsing file: {e}")

        st.markdown("### Export")
        st.download_button(
            "📥 Export Positions",
            export_positions_csv(store.get_positions()),
            file_name="positions.csv",
            mime="text/csv"
        )
        st.download_button(
            "📥 Download Template",
            export_positions_template(),
            file_name="positions_template.csv",
            mime="text/csv"
        )

    with settings_tab:
        with st.form("settings"):
            new_benchmark = st.text_input("Benchmark Ticker", value=benchmark_ticker)
            new_rate = st.number_input(
                "Risk-Free Rate (%)", min_value=0.0, max_value=20.0,
                value=risk_free_rate * 100, step=0.05
            )
            report_day = st.number_input(
                "Report Generation Day", min_value=1, max_value=28,
                value=int(settings.get('report_generation_day') or 1)
            )
            if st.form_submit_button("Save Settings"):
                if not validate_ticker_format(new_benchmark):
                    st.error(f"Invalid ticker: {new_benchmark}")
                else:
                    store.update_settings(
                        benchmark_ticker=new_benchmark,
                        risk_free_rate=new_rate / 100,
                        report_generation_day=int(report_day),
                    )
                    st.success("Settings saved")
                    st.rerun()

        if st.button("Use current 10Y Treasury yield"):
            rate = get_risk_free_rate()
            store.update_settings(risk_free_rate=rate)
            st.success(f"Risk-free rate set to {rate:.2%}")
            st.rerun()

    with jobs_tab:
        st.markdown(f"**Last price update:** {settings.get('last_price_update') or 'never'}")
        st.markdown(f"**Last report:** {settings.get('last_report_generation') or 'never'}")

        col1, col2 = st.columns(2)
        with col1:
            if st.button("🔄 Update Prices", use_container_width=True):
                with st.spinner('Fetching market data... (this may take a moment)'):
                    st.session_state.fetcher.clear_cache()
                    try:
                        updated = update_prices(store, st.session_state.fetcher)
                        st.success(f"Stored new closes for {len(updated)} tickers")
                    except PortfolioAnalyticsError as e:
                        st.error(f"Price update failed: {e}")
        with col2:
            if st.button("📝 Generate Report", use_container_width=True):
                with st.spinner('Generating report...'):
                    try:
                        report_id, _ = generate_report(store)
                        st.success(f"Generated report {report_id}")
                    except PortfolioAnalyticsError as e:
                        st.error(f"Report generation failed: {e}")


if page == "🔐 Admin":
    render_admin()
    st.stop()


# =============================================================================
# DASHBOARD
# =============================================================================

st.markdown("# 📊 Portfolio Analytics Dashboard")
st.markdown(f"Performance, risk and allocation against **{benchmark_ticker}**")
st.markdown("---")

positions = store.get_positions()
if positions.empty:
    st.markdown("""
    <div style="text-align: center; padding: 60px 20px;">
        <h2 style="color: #94a3b8;">No positions yet</h2>
        <p style="color: #64748b; font-size: 1.1rem; max-width: 600px; margin: 20px auto;">
            An admin can add positions or import a CSV from the Admin page.
        </p>
    </div>
    """, unsafe_allow_html=True)
    st.stop()

try:
    start, end = resolve_window(window)
    risk_start, today = resolve_window(RISK_WINDOW)
    # A week of slack resolves start prices; the trailing year feeds risk and the rolling table
    history_start = min(start, risk_start) - pd.Timedelta(days=7)
    price_histories, benchmark_history = load_histories(
        positions, benchmark_ticker, history_start, max(end, today)
    )
    result = compute_performance(
        positions, price_histories, benchmark_history, window,
        benchmark_ticker=benchmark_ticker
    )
    movers = compute_top_movers(positions, price_histories, window, top_n)
    valued = ValuationEngine.refresh_weights(positions)
    allocation = compute_sector_allocation(valued)
    year_result = compute_performance(
        positions, price_histories, benchmark_history, RISK_WINDOW,
        benchmark_ticker=benchmark_ticker
    )
    rolling = period_comparisons(year_result.portfolio_values, year_result.benchmark_values, ROLLING_WINDOWS)
    risk = compute_trailing_risk(
        positions, price_histories, benchmark_history, risk_free_rate, benchmark_ticker=benchmark_ticker
    )
except ValueError as e:
    st.error(f"Invalid period: {e}")
    st.stop()
except (ConfigurationError, UpstreamFailure) as e:
    logger.error(f"Dashboard unavailable: {e}")
    st.error(f"Dashboard unavailable: {e}")
    st.stop()

if result.is_empty:
    st.warning("No stored prices for this period. An admin can run a price update.")


# =============================================================================
# KEY METRICS ROW
# =============================================================================

st.markdown("## Key Metrics")

portfolio_change = result.portfolio_pct_change.iloc[-1] if not result.is_empty else None
benchmark_change = result.benchmark_pct_change.iloc[-1] if not result.is_empty else None

col1, col2, col3, col4, col5, col6 = st.columns(6)

with col1:
    st.metric("Portfolio Value", format_currency(ValuationEngine.total_value(valued)))
with col2:
    create_metric_card(
        format_percentage(portfolio_change, with_sign=True), "Portfolio Change",
        get_color_for_value(portfolio_change)
    )
with col3:
    create_metric_card(
        format_percentage(benchmark_change, with_sign=True), f"{benchmark_ticker} Change",
        get_color_for_value(benchmark_change)
    )
with col4:
    st.metric("Sharpe Ratio", format_number(risk.sharpe_ratio))
with col5:
    st.metric("Beta", format_number(risk.beta))
with col6:
    st.metric("Max Drawdown", format_percentage(risk.max_drawdown * 100 if risk.max_drawdown is not None else None))

st.markdown("---")

tab1, tab2, tab3, tab4, tab5 = st.tabs([
    "📈 Performance",
    "⚠️ Risk Analysis",
    "🏆 Holdings",
    "🚀 Top Movers",
    "📝 Reports"
])

# TAB 1: Performance
with tab1:
    st.markdown("### Portfolio vs Benchmark")
    st.plotly_chart(plot_performance(result, benchmark_name=benchmark_ticker, title=""), use_container_width=True)

    col1, col2 = st.columns([2, 1])
    with col1:
        st.markdown("### Drawdown Analysis")
        st.plotly_chart(plot_drawdown(result.portfolio_values, title=""), use_container_width=True)
    with col2:
        st.markdown("### Rolling Returns")
        st.dataframe(
            pd.DataFrame([{
                'Period': c.period,
                'Portfolio': format_percentage(c.portfolio_return, with_sign=True),
                benchmark_ticker: format_percentage(c.benchmark_return, with_sign=True),
                'Difference': format_percentage(c.difference, with_sign=True),
            } for c in rolling]),
            use_container_width=True,
            hide_index=True
        )

    st.download_button(
        "📥 Export Series",
        result.to_frame().to_csv().encode('utf-8'),
        file_name="performance.csv",
        mime="text/csv"
    )

# TAB 2: Risk Analysis
with tab2:
    st.markdown("### Risk Metrics Dashboard")
    st.caption("Risk statistics always cover the trailing year, whatever period is selected.")
    if not risk.is_available:
        st.info("Not enough data in the trailing year for risk statistics.")
    st.plotly_chart(plot_risk_metrics(risk, title=""), use_container_width=True)

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Volatility (ann.)", format_percentage(risk.standard_deviation_pct))
    with col2:
        st.metric("Risk-Free Rate", format_percentage(risk.risk_free_rate * 100))
    with col3:
        st.metric("Observations", risk.observations)
    with col4:
        st.metric("Period", f"{risk_start:%Y-%m-%d} to {today:%Y-%m-%d}")

# TAB 3: Holdings
with tab3:
    col1, col2 = st.columns([1, 1])
    with col1:
        st.markdown("### Holdings")
        st.plotly_chart(plot_holdings_allocation(valued, title=""), use_container_width=True)
    with col2:
        st.markdown("### Sector Allocation")
        st.plotly_chart(plot_sector_allocation(allocation, title=""), use_container_width=True)

    st.markdown("### Holdings Detail")
    display_df = valued[[
        'ticker', 'company_name', 'sector', 'shares', 'purchase_price',
        'current_price', 'market_value', 'weight'
    ]].copy()
    st.dataframe(
        display_df.style.format({
            'shares': '{:.2f}',
            'purchase_price': '${:.2f}',
            'current_price': '${:.2f}',
            'market_value': '${:,.2f}',
            'weight': '{:.1f}%'
        }, na_rep='--'),
        use_container_width=True,
        hide_index=True
    )

# TAB 4: Top Movers
with tab4:
    col1, col2 = st.columns(2)
    with col1:
        st.markdown("### Top Gainers")
        st.plotly_chart(plot_top_movers(movers.gainers, title=""), use_container_width=True)
        st.dataframe(movers_frame(movers.gainers), use_container_width=True, hide_index=True)
    with col2:
        st.markdown("### Top Losers")
        st.plotly_chart(plot_top_movers(movers.losers, title=""), use_container_width=True)
        st.dataframe(movers_frame(movers.losers), use_container_width=True, hide_index=True)

# TAB 5: Reports
with tab5:
    reports = store.list_reports()
    if not reports:
        st.info("No reports generated yet.")
    for report in reports:
        with st.expander(f"Report {report['date']:%Y-%m-%d} | {format_currency(report['portfolio_value'])}"):
            st.markdown(report['commentary'] or '_No commentary_')
            st.caption(f"File: {report['file_url']}")


# =============================================================================
# FOOTER
# =============================================================================

st.markdown("---")
st.markdown("""
<div style="text-align: center; color: #64748b; padding: 20px;">
    <p>Built with Streamlit & Plotly | Data provided by Yahoo Finance | Not financial advice</p>
</div>
""", unsafe_allow_html=True)
