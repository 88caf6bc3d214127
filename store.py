"""
Record Store
Reads and writes positions, price histories, settings and reports
through the SQLAlchemy models
"""

import hmac
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional

import pandas as pd
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from calculations import POSITION_COLUMNS, ValuationEngine
from exceptions import UpstreamFailure
from models import (
    Base, BenchmarkHistory, Position, PriceHistory, Report, SessionLocal, Settings, seed_settings,
)
from utils import normalize_ticker, to_timestamp

logger = logging.getLogger(__name__)

POSITION_FRAME_COLUMNS = ['id'] + POSITION_COLUMNS + ['cost_basis', 'notes']
SETTINGS_FIELDS = [
    'benchmark_ticker', 'risk_free_rate', 'report_generation_day',
    'last_price_update', 'last_report_generation',
]


class RecordStore:
    """
    Persistence facade used by the dashboard and the scheduled jobs
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> 'RecordStore':
        """Create tables on the given database and seed the settings row"""
        engine = create_engine(database_url, echo=False)
        Base.metadata.create_all(bind=engine)
        store = cls(sessionmaker(autocommit=False, autoflush=False, bind=engine))
        with store.session() as session:
            seed_settings(session)
        return store

    @contextmanager
    def session(self):
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def get_positions(self) -> pd.DataFrame:
        with self.session() as session:
            rows = [
                {col: getattr(p, col) for col in POSITION_FRAME_COLUMNS}
                for p in session.query(Position).order_by(Position.id).all()
            ]
        frame = pd.DataFrame(rows, columns=POSITION_FRAME_COLUMNS)
        frame['purchase_date'] = pd.to_datetime(frame['purchase_date'])
        return frame

    def add_position(
        self,
        ticker: str,
        shares: float,
        purchase_date,
        purchase_price: float,
        company_name: Optional[str] = None,
        sector: Optional[str] = None,
        notes: str = ''
    ) -> int:
        ticker = normalize_ticker(ticker)
        if shares <= 0 or purchase_price <= 0:
            raise ValueError("Shares and purchase price must be positive")

        with self.session() as session:
            position = Position(
                ticker=ticker,
                company_name=company_name or ticker,
                shares=float(shares),
                purchase_date=to_timestamp(purchase_date).date(),
                purchase_price=float(purchase_price),
                cost_basis=float(shares) * float(purchase_price),
                sector=sector or 'Unknown',
                current_price=float(purchase_price),
                notes=notes or '',
            )
            session.add(position)
            session.flush()
            position_id = position.id

        logger.info(f"Added position {ticker} ({shares} shares)")
        self.refresh_valuations()
        return position_id

    def update_position(self, position_id: int, **fields) -> None:
        with self.session() as session:
            position = session.get(Position, position_id)
            if position is None:
                raise KeyError(f"Position {position_id} not found")
            for key, value in fields.items():
                if key == 'ticker':
                    value = normalize_ticker(value)
                elif key == 'purchase_date':
                    value = to_timestamp(value).date()
                setattr(position, key, value)
            position.cost_basis = position.shares * position.purchase_price
        self.refresh_valuations()

    def delete_position(self, position_id: int) -> None:
        with self.session() as session:
            position = session.get(Position, position_id)
            if position is None:
                raise KeyError(f"Position {position_id} not found")
            session.delete(position)
        self.refresh_valuations()

    def replace_positions(self, positions: pd.DataFrame) -> int:
        """Replace every position with the rows of an imported frame"""
        with self.session() as session:
            session.query(Position).delete()
            for row in positions.to_dict('records'):
                session.add(Position(
                    ticker=normalize_ticker(row['ticker']),
                    company_name=row.get('company_name') or row['ticker'],
                    shares=float(row['shares']),
                    purchase_date=to_timestamp(row['purchase_date']).date(),
                    purchase_price=float(row['purchase_price']),
                    cost_basis=float(row['shares']) * float(row['purchase_price']),
                    sector=row.get('sector') or 'Unknown',
                    current_price=float(row['purchase_price']),
                    notes=row.get('notes') or '',
                ))
        logger.info(f"Imported {len(positions)} positions")
        self.refresh_valuations()
        return len(positions)

    def update_position_valuations(self, positions: pd.DataFrame) -> None:
        """Write back current price, market value and weight by position id"""
        with self.session() as session:
            for row in positions.to_dict('records'):
                position = session.get(Position, int(row['id']))
                if position is None:
                    continue
                position.current_price = _optional_float(row.get('current_price'))
                position.market_value = _optional_float(row.get('market_value'))
                position.weight = _optional_float(row.get('weight'))

    def refresh_valuations(self, prices: Optional[Dict[str, float]] = None) -> pd.DataFrame:
        """Valuation pass over the stored positions"""
        positions = ValuationEngine.refresh_weights(self.get_positions(), prices)
        if not positions.empty:
            self.update_position_valuations(positions)
        return positions

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> dict:
        with self.session() as session:
            settings = session.query(Settings).order_by(Settings.id).first()
            if settings is None:
                raise UpstreamFailure("Settings record missing")
            return {field: getattr(settings, field) for field in SETTINGS_FIELDS}

    def update_settings(self, **fields) -> None:
        with self.session() as session:
            settings = session.query(Settings).order_by(Settings.id).first()
            if settings is None:
                raise UpstreamFailure("Settings record missing")
            for key, value in fields.items():
                if key == 'benchmark_ticker':
                    value = normalize_ticker(value)
                setattr(settings, key, value)

    def check_admin_password(self, password: str) -> bool:
        with self.session() as session:
            settings = session.query(Settings).order_by(Settings.id).first()
            expected = settings.admin_password if settings is not None else None
        if not expected or not password:
            return False
        return hmac.compare_digest(str(password).encode(), str(expected).encode())

    # ------------------------------------------------------------------
    # Price history
    # ------------------------------------------------------------------

    def fetch_price_history(self, ticker: str, start_date, end_date) -> pd.DataFrame:
        return self._read_prices(PriceHistory, ticker, start_date, end_date)

    def fetch_benchmark_history(self, ticker: str, start_date, end_date) -> pd.DataFrame:
        return self._read_prices(BenchmarkHistory, ticker, start_date, end_date)

    def _read_prices(self, model, ticker: str, start_date, end_date) -> pd.DataFrame:
        ticker = normalize_ticker(ticker)
        with self.session() as session:
            rows = (
                session.query(model.date, model.close_price)
                .filter(model.ticker == ticker)
                .filter(model.date >= to_timestamp(start_date).date())
                .filter(model.date <= to_timestamp(end_date).date())
                .order_by(model.date)
                .all()
            )
        frame = pd.DataFrame(rows, columns=['date', 'close'])
        frame['date'] = pd.to_datetime(frame['date'])
        frame.insert(0, 'ticker', ticker)
        return frame

    def has_price(self, ticker: str, day, benchmark: bool = False) -> bool:
        model = BenchmarkHistory if benchmark else PriceHistory
        with self.session() as session:
            return session.query(model.id).filter(
                model.ticker == normalize_ticker(ticker),
                model.date == to_timestamp(day).date(),
            ).first() is not None

    def save_prices(self, prices: pd.DataFrame, benchmark: bool = False) -> int:
        """
        Insert price rows not already stored; returns the number inserted
        """
        model = BenchmarkHistory if benchmark else PriceHistory
        inserted = 0
        with self.session() as session:
            for row in prices.to_dict('records'):
                ticker = normalize_ticker(row['ticker'])
                day = to_timestamp(row['date']).date()
                close = _optional_float(row.get('close'))
                if close is None or close <= 0:
                    continue
                exists = session.query(model.id).filter(model.ticker == ticker, model.date == day).first()
                if exists is not None:
                    continue
                session.add(model(
                    ticker=ticker,
                    date=day,
                    open_price=_optional_float(row.get('open')),
                    high_price=_optional_float(row.get('high')),
                    low_price=_optional_float(row.get('low')),
                    close_price=close,
                    volume=_optional_float(row.get('volume')),
                ))
                session.flush()
                inserted += 1
        return inserted

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def save_report(self, report: dict, file_url: str) -> int:
        with self.session() as session:
            record = Report(
                date=to_timestamp(report['date']).to_pydatetime(),
                file_url=file_url,
                portfolio_value=report.get('portfolio_value'),
                benchmark_value=report.get('benchmark_value'),
                top_gainers=report.get('top_gainers', []),
                top_losers=report.get('top_losers', []),
                summary=report,
                commentary=report.get('commentary', ''),
            )
            session.add(record)
            session.flush()
            return record.id

    def list_reports(self, limit: int = 10) -> List[dict]:
        with self.session() as session:
            reports = session.query(Report).order_by(Report.date.desc(), Report.id.desc()).limit(limit).all()
            return [
                {
                    'id': r.id,
                    'date': r.date,
                    'file_url': r.file_url,
                    'portfolio_value': r.portfolio_value,
                    'benchmark_value': r.benchmark_value,
                    'top_gainers': r.top_gainers or [],
                    'top_losers': r.top_losers or [],
                    'summary': r.summary or {},
                    'commentary': r.commentary or '',
                }
                for r in reports
            ]


def _optional_float(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)

