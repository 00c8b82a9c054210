"""
Advisory lease for externally triggered jobs
"""
from sqlalchemy import Column, String, DateTime
from app.core.database import Base


class JobLease(Base):
    """At most one holder per job name until expires_at"""
    __tablename__ = "job_leases"

    name = Column(String(100), primary_key=True)
    holder = Column(String(100), nullable=False)
    acquired_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
