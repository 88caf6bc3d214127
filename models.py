"""
Database models for the Portfolio Dashboard
Uses SQLAlchemy ORM with SQLite for local development
"""

from datetime import datetime

from sqlalchemy import (
    JSON, Column, Date, DateTime, Float, Integer, String, Text, UniqueConstraint, create_engine,
)
from sqlalchemy.orm import declarative_base, sessionmaker

from config import (
    ADMIN_PASSWORD, DATABASE_URL, DEFAULT_BENCHMARK_TICKER, DEFAULT_REPORT_GENERATION_DAY,
    DEFAULT_RISK_FREE_RATE,
)

engine = create_engine(DATABASE_URL, echo=False)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


class Position(Base):
    """Current holding with its cached valuation"""
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, index=True)
    ticker = Column(String(12), nullable=False, index=True)
    company_name = Column(String(200))
    shares = Column(Float, nullable=False)
    purchase_date = Column(Date, nullable=False)
    purchase_price = Column(Float, nullable=False)
    cost_basis = Column(Float)
    sector = Column(String(50), default="Unknown")
    current_price = Column(Float)
    market_value = Column(Float)
    weight = Column(Float)  # percent of portfolio value
    notes = Column(String(500))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PriceRecordMixin:
    id = Column(Integer, primary_key=True, index=True)
    ticker = Column(String(12), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)
    open_price = Column(Float)
    high_price = Column(Float)
    low_price = Column(Float)
    close_price = Column(Float, nullable=False)
    volume = Column(Float)
    created_at = Column(DateTime, default=datetime.utcnow)


class PriceHistory(PriceRecordMixin, Base):
    """Daily closes of held securities"""
    __tablename__ = "price_history"
    __table_args__ = (UniqueConstraint('ticker', 'date', name='uq_price_history_ticker_date'),)


class BenchmarkHistory(PriceRecordMixin, Base):
    """Daily closes of the benchmark index"""
    __tablename__ = "benchmark_history"
    __table_args__ = (UniqueConstraint('ticker', 'date', name='uq_benchmark_history_ticker_date'),)


class Settings(Base):
    """Single row of dashboard-wide settings"""
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True, index=True)
    admin_password = Column(String(200))
    benchmark_ticker = Column(String(12))
    risk_free_rate = Column(Float)
    report_generation_day = Column(Integer, default=1)
    last_price_update = Column(DateTime)
    last_report_generation = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Report(Base):
    """Generated monthly report"""
    __tablename__ = "reports"

    id = Column(Integer, primary_key=True, index=True)
    date = Column(DateTime, nullable=False, default=datetime.utcnow)
    file_url = Column(String(500))
    portfolio_value = Column(Float)
    benchmark_value = Column(Float)
    top_gainers = Column(JSON)
    top_losers = Column(JSON)
    summary = Column(JSON)
    commentary = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)


def seed_settings(session):
    """Insert the default settings row if none exists"""
    if session.query(Settings).count() == 0:
        session.add(Settings(
            admin_password=ADMIN_PASSWORD,
            benchmark_ticker=DEFAULT_BENCHMARK_TICKER,
            risk_free_rate=DEFAULT_RISK_FREE_RATE,
            report_generation_day=DEFAULT_REPORT_GENERATION_DAY,
        ))
        session.commit()


def init_db(bind=None, session_factory=None):
    """Initialize the database, create all tables and seed settings"""
    Base.metadata.create_all(bind=bind or engine)

    session = (session_factory or SessionLocal)()
    try:
        seed_settings(session)
    finally:
        session.close()


if __name__ == "__main__":
    init_db()
    print("Database initialized successfully!")
