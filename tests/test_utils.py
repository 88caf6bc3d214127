"""
Unit Tests for formatting and positions CSV handling
"""

from datetime import date

import pandas as pd
import pytest

from utils import (
    export_positions_csv, export_positions_template, format_currency, format_number,
    format_percentage, get_color_for_value, parse_positions_csv, to_timestamp,
    validate_ticker_format,
)


class TestFormatting:
    """Test suite for display formatters"""

    def test_format_currency(self):
        assert format_currency(999.5) == '$999.50'
        assert format_currency(12_500) == '$12.50K'
        assert format_currency(3_200_000) == '$3.20M'
        assert format_currency(None) == '$--'

    def test_format_percentage(self):
        assert format_percentage(5.0) == '5.00%'
        assert format_percentage(5.0, with_sign=True) == '+5.00%'
        assert format_percentage(-1.234, decimals=1, with_sign=True) == '-1.2%'
        assert format_percentage(None) == '--'

    def test_format_number(self):
        assert format_number(1234567.891) == '1,234,567.89'
        assert format_number(float('nan')) == '--'

    def test_color_for_value(self):
        assert get_color_for_value(1.0) == '#10b981'
        assert get_color_for_value(-1.0) == '#ef4444'
        assert get_color_for_value(1.0, positive_good=False) == '#ef4444'
        assert get_color_for_value(None) == '#94a3b8'


class TestTickers:
    """Test suite for ticker and date helpers"""

    @pytest.mark.parametrize('ticker', ['AAPL', 'brk.b', '^GSPC', 'EURUSD=X'])
    def test_valid_tickers(self, ticker):
        assert validate_ticker_format(ticker)

    @pytest.mark.parametrize('ticker', ['', None, 'A B', 'TOOLONGTICKER1'])
    def test_invalid_tickers(self, ticker):
        assert not validate_ticker_format(ticker)

    def test_to_timestamp_drops_timezone(self):
        ts = to_timestamp(pd.Timestamp('2024-06-14 15:30', tz='America/New_York'))

        assert ts == pd.Timestamp('2024-06-14')
        assert ts.tzinfo is None


class TestPositionsCsv:
    """Test suite for positions CSV import and export"""

    def test_parse_valid_csv(self):
        content = (
            "Ticker,Shares,Purchase Date,Purchase Price,Sector\n"
            " aapl ,10,2024-01-15,150.00,Technology\n"
            "JPM,5,2024-02-01,140.00,\n"
        )
        df = parse_positions_csv(content.encode())

        assert list(df['ticker']) == ['AAPL', 'JPM']
        assert list(df['company_name']) == ['AAPL', 'JPM']
        assert list(df['sector']) == ['Technology', 'Unknown']
        assert df['purchase_date'].iloc[0] == date(2024, 1, 15)

    def test_missing_required_column(self):
        content = b"Ticker,Shares,Purchase Price\nAAPL,10,150\n"

        with pytest.raises(ValueError, match="purchase_date"):
            parse_positions_csv(content)

    def test_invalid_rows_skipped(self):
        content = (
            "Ticker,Shares,Purchase Date,Purchase Price\n"
            "AAPL,10,2024-01-15,150\n"
            "MSFT,-3,2024-01-15,300\n"
            "BAD TICKER,1,2024-01-15,10\n"
            "XOM,abc,2024-01-15,100\n"
            "JPM,5,not a date,140\n"
        )
        df = parse_positions_csv(content.encode())

        assert list(df['ticker']) == ['AAPL']

    def test_export_reimports(self):
        positions = pd.DataFrame([{
            'ticker': 'AAPL', 'company_name': 'Apple Inc.', 'shares': 10.0,
            'purchase_date': pd.Timestamp('2024-01-15'), 'purchase_price': 150.0,
            'sector': 'Technology', 'notes': 'core', 'market_value': 1900.0,
        }])
        exported = export_positions_csv(positions)

        assert exported.decode().splitlines()[0] == (
            'Ticker,Company Name,Shares,Purchase Date,Purchase Price,Sector,Notes'
        )
        reimported = parse_positions_csv(exported)
        assert reimported.iloc[0]['ticker'] == 'AAPL'
        assert reimported.iloc[0]['notes'] == 'core'

    def test_template_is_importable(self):
        df = parse_positions_csv(export_positions_template())

        assert list(df['ticker']) == ['AAPL', 'JPM']
