"""
Point-in-time price snapshots
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, ForeignKey, Index, text
from sqlalchemy.sql import func
from app.core.database import Base


class StockPrice(Base):
    """Price snapshot; exactly one row per stock has is_latest set"""
    __tablename__ = "stock_prices"
    __table_args__ = (
        Index(
            "uq_stock_prices_latest",
            "stock_id",
            unique=True,
            postgresql_where=text("is_latest"),
            sqlite_where=text("is_latest = 1"),
        ),
        Index("ix_stock_prices_stock_timestamp", "stock_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, index=True)
    stock_id = Column(Integer, ForeignKey("stocks.id", ondelete="CASCADE"), nullable=False, index=True)
    price = Column(Float, nullable=False)
    change = Column(Float, nullable=True)
    change_percent = Column(Float, nullable=True)
    volume = Column(Float, nullable=True)
    market_cap = Column(Float, nullable=True)
    fifty_two_week_low = Column(Float, nullable=True)
    fifty_two_week_high = Column(Float, nullable=True)
    previous_close = Column(Float, nullable=True)
    day_high = Column(Float, nullable=True)
    day_low = Column(Float, nullable=True)
    source = Column(String(32), nullable=False, default="yahoo")
    is_latest = Column(Boolean, nullable=False, default=False)
    timestamp = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
