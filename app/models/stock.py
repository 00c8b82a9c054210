"""
Stock and portfolio holding models
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean
from sqlalchemy.sql import func
from app.core.database import Base


class Stock(Base):
    """A tradable symbol known to the system"""
    __tablename__ = "stocks"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=True)
    exchange = Column(String(50), nullable=True)
    currency = Column(String(10), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())


class UserStock(Base):
    """Portfolio row linking a user to a stock.

    stock_id deliberately carries no foreign key: stocks can be deleted out from
    under portfolios, and the maintenance job repairs the orphans.
    """
    __tablename__ = "user_stocks"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    stock_id = Column(Integer, nullable=False, index=True)
    group_id = Column(Integer, nullable=True)
    quantity = Column(Float, nullable=True)
    average_price = Column(Float, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())
