"""
Configuration for the Portfolio Analytics Dashboard
Values come from the environment (a local .env file is loaded first)
"""

import os

from dotenv import load_dotenv

load_dotenv()

# Record store
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///portfolio.db")

# Single shared secret guarding the admin area
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

# Narrative commentary
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# Defaults used to seed the settings record
DEFAULT_BENCHMARK_TICKER = os.getenv("DEFAULT_BENCHMARK_TICKER", "SPY")
DEFAULT_RISK_FREE_RATE = float(os.getenv("DEFAULT_RISK_FREE_RATE", "0.05"))
DEFAULT_REPORT_GENERATION_DAY = int(os.getenv("DEFAULT_REPORT_GENERATION_DAY", "1"))

# Market data fetching
FETCH_TIMEOUT_SECONDS = float(os.getenv("FETCH_TIMEOUT_SECONDS", "15"))
FETCH_MAX_WORKERS = int(os.getenv("FETCH_MAX_WORKERS", "8"))

# Engine policies: "drop" or "ffill" / "index" or "date"
PRICE_FILL_POLICY = os.getenv("PRICE_FILL_POLICY", "drop")
RETURN_ALIGNMENT = os.getenv("RETURN_ALIGNMENT", "index")

# Reports
REPORT_LOOKBACK_DAYS = int(os.getenv("REPORT_LOOKBACK_DAYS", "365"))
REPORT_STORAGE_URL = os.getenv("REPORT_STORAGE_URL", "reports")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ============================================================
# ANALYTICS CONSTANTS
# ============================================================
TRADING_DAYS_PER_YEAR = 252
DEFAULT_TOP_N = 5
WEIGHT_TOLERANCE = 0.01  # percentage points

# Reference sector weights of the benchmark index (percent)
BENCHMARK_SECTOR_WEIGHTS = {
    'Technology': 25.5,
    'Healthcare': 14.2,
    'Financials': 13.7,
    'Consumer Discretionary': 10.8,
    'Communication Services': 8.5,
    'Industrials': 7.9,
    'Consumer Staples': 6.5,
    'Energy': 5.2,
    'Utilities': 3.2,
    'Real Estate': 2.8,
    'Materials': 1.7,
}
