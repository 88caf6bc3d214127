"""
Utility Functions
Formatting, ticker handling and positions CSV import/export
"""

import io
import logging
import re
from datetime import date, datetime
from typing import Union

import pandas as pd

logger = logging.getLogger(__name__)

TICKER_PATTERN = re.compile(r'^[A-Z0-9\^][A-Z0-9\.\-=]{0,11}$')

# Column name used in the record store -> header used in CSV files
CSV_HEADERS = {
    'ticker': 'Ticker',
    'company_name': 'Company Name',
    'shares': 'Shares',
    'purchase_date': 'Purchase Date',
    'purchase_price': 'Purchase Price',
    'sector': 'Sector',
    'notes': 'Notes',
}

REQUIRED_CSV_COLUMNS = ['ticker', 'shares', 'purchase_date', 'purchase_price']


def format_currency(value: float, symbol: str = '$', decimals: int = 2) -> str:
    """Format a number as currency"""
    if value is None or pd.isna(value):
        return f'{symbol}--'

    if abs(value) >= 1_000_000_000:
        return f'{symbol}{value/1_000_000_000:.2f}B'
    elif abs(value) >= 1_000_000:
        return f'{symbol}{value/1_000_000:.2f}M'
    elif abs(value) >= 1_000:
        return f'{symbol}{value/1_000:.2f}K'
    else:
        return f'{symbol}{value:,.{decimals}f}'


def format_percentage(value: float, decimals: int = 2, with_sign: bool = False) -> str:
    """Format a number (already in percent) as percentage"""
    if value is None or pd.isna(value):
        return '--'

    if with_sign and value > 0:
        return f'+{value:.{decimals}f}%'
    return f'{value:.{decimals}f}%'


def format_number(value: float, decimals: int = 2) -> str:
    """Format a number with commas; unavailable values render as --"""
    if value is None or pd.isna(value):
        return '--'
    return f'{value:,.{decimals}f}'


def normalize_ticker(ticker) -> str:
    """Canonical ticker form: stripped, upper case"""
    if ticker is None:
        return ''
    return str(ticker).strip().upper()


def validate_ticker_format(ticker: str) -> bool:
    """
    Validate ticker symbol format
    """
    if not ticker:
        return False
    return bool(TICKER_PATTERN.match(normalize_ticker(ticker)))


def to_timestamp(value: Union[str, date, datetime, pd.Timestamp]) -> pd.Timestamp:
    """Convert a date-like value to a tz-naive, midnight-normalized Timestamp"""
    ts = pd.Timestamp(value)
    if ts.tzinfo is not None:
        ts = ts.tz_localize(None)
    return ts.normalize()


def parse_positions_csv(file_content: Union[str, bytes, io.BytesIO]) -> pd.DataFrame:
    """
    Parse positions from CSV content

    Expected headers: Ticker, Shares, Purchase Date, Purchase Price
    Optional headers: Company Name, Sector, Notes
    Header matching is case-insensitive; spaces become underscores.
    """
    try:
        if isinstance(file_content, bytes):
            file_content = io.BytesIO(file_content)

        df = pd.read_csv(file_content)
        df.columns = df.columns.str.lower().str.strip().str.replace(' ', '_')

        for col in REQUIRED_CSV_COLUMNS:
            if col not in df.columns:
                raise ValueError(f"Missing required column: {col}")

        df = df.dropna(subset=['ticker'])
        df['ticker'] = df['ticker'].astype(str).map(normalize_ticker)
        df['purchase_date'] = pd.to_datetime(df['purchase_date'], errors='coerce').dt.date
        df['shares'] = pd.to_numeric(df['shares'], errors='coerce')
        df['purchase_price'] = pd.to_numeric(df['purchase_price'], errors='coerce')

        if 'company_name' not in df.columns:
            df['company_name'] = df['ticker']
        df['company_name'] = df['company_name'].fillna(df['ticker'])
        if 'sector' not in df.columns:
            df['sector'] = 'Unknown'
        df['sector'] = df['sector'].fillna('Unknown')
        if 'notes' not in df.columns:
            df['notes'] = ''
        df['notes'] = df['notes'].fillna('')

        df = df.dropna(subset=REQUIRED_CSV_COLUMNS)

        invalid = ~df['ticker'].map(validate_ticker_format) | (df['shares'] <= 0) | (df['purchase_price'] <= 0)
        if invalid.any():
            logger.warning(f"Skipping {int(invalid.sum())} invalid position rows: "
                           f"{', '.join(df.loc[invalid, 'ticker'])}")
            df = df[~invalid]

        return df[list(CSV_HEADERS)].reset_index(drop=True)

    except Exception as e:
        logger.error(f"Error parsing positions CSV: {e}")
        raise


def export_positions_csv(positions: pd.DataFrame) -> bytes:
    """
    Export positions to CSV bytes using the import headers
    """
    frame = positions.reindex(columns=list(CSV_HEADERS)).copy()
    if 'purchase_date' in frame.columns:
        frame['purchase_date'] = pd.to_datetime(frame['purchase_date']).dt.strftime('%Y-%m-%d')
    frame = frame.rename(columns=CSV_HEADERS)
    return frame.to_csv(index=False).encode('utf-8')


def export_positions_template() -> bytes:
    """
    Generate a positions template CSV
    """
    template = pd.DataFrame({
        'ticker': ['AAPL', 'JPM'],
        'company_name': ['Apple Inc.', 'JPMorgan Chase & Co.'],
        'shares': [10, 5],
        'purchase_price': [150.00, 140.00],
        'purchase_date': ['2024-01-15', '2024-02-01'],
        'sector': ['Technology', 'Financials'],
        'notes': ['', ''],
    })
    return export_positions_csv(template)


def get_color_for_value(value: float, positive_good: bool = True) -> str:
    """
    Get color code based on value sign
    """
    if value is None or pd.isna(value):
        return '#94a3b8'
    if positive_good:
        return '#10b981' if value >= 0 else '#ef4444'  # Green or Red
    else:
        return '#ef4444' if value >= 0 else '#10b981'  # Red or Green
