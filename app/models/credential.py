"""
Provider API credential model
"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, UniqueConstraint
from sqlalchemy.sql import func
from app.core.database import Base


class ProviderCredential(Base):
    """API key for a market data provider.

    user_id NULL means the key belongs to the shared pool. requests_used counts
    calls in the current UTC minute, daily_requests_used in the current UTC day;
    both windows are anchored on last_used_at.
    """
    __tablename__ = "provider_credentials"
    __table_args__ = (
        UniqueConstraint("provider", "key_fingerprint", name="uq_provider_credentials_fingerprint"),
    )

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    key_name = Column(String(100), nullable=True)
    api_key = Column(Text, nullable=False)  # encrypted
    key_fingerprint = Column(String(64), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    requests_used = Column(Integer, default=0, nullable=False)
    daily_requests_used = Column(Integer, default=0, nullable=False)
    total_requests = Column(Integer, default=0, nullable=False)
    request_limit = Column(Integer, default=5, nullable=False)
    daily_request_limit = Column(Integer, default=500, nullable=False)
    last_used_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    blocked_until = Column(DateTime, nullable=True)
    block_reason = Column(String(200), nullable=True)
    registration_id = Column(String(255), nullable=True, index=True)
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, onupdate=func.now())
