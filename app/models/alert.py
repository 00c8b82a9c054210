"""
Price alert model
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, Text, ForeignKey
from sqlalchemy.sql import func
from app.core.database import Base

ALERT_TYPES = ("price_below", "price_above", "target_reached", "cutoff_reached")


class Alert(Base):
    """User price alert. Trigger fields are written by the alert evaluator."""
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    stock_id = Column(Integer, ForeignKey("stocks.id", ondelete="CASCADE"), nullable=False, index=True)
    alert_type = Column(String(32), nullable=False)  # price_below, price_above, target_reached, cutoff_reached
    target_price = Column(Float, nullable=False)
    current_price = Column(Float, nullable=True)
    message = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)
    email_sent = Column(Boolean, default=False, nullable=False)
    push_sent = Column(Boolean, default=False, nullable=False)
    triggered_at = Column(DateTime, nullable=True)
    email_sent_at = Column(DateTime, nullable=True)
    push_sent_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())
