"""
Advisory leases so only one instance runs a named job at a time
"""
import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.core.clock import utc_now
from app.core.database import SessionLocal
from app.models.job_lease import JobLease

logger = logging.getLogger(__name__)


class JobLeaseService:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or SessionLocal

    def acquire(self, name: str, holder: str, ttl_seconds: int) -> bool:
        """Take the lease if it is free or expired. Returns False while someone else holds it."""
        now = utc_now()
        values = {
            JobLease.holder: holder,
            JobLease.acquired_at: now,
            JobLease.expires_at: now + timedelta(seconds=ttl_seconds),
        }
        db = self._session_factory()
        try:
            taken = (
                db.query(JobLease)
                .filter(JobLease.name == name, JobLease.expires_at <= now)
                .update(values, synchronize_session=False)
            )
            if not taken:
                if db.query(JobLease.name).filter(JobLease.name == name).first() is not None:
                    db.rollback()
                    logger.info(f"Lease {name} is held by another run")
                    return False
                db.add(JobLease(name=name, holder=holder, acquired_at=now, expires_at=now + timedelta(seconds=ttl_seconds)))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            logger.info(f"Lease {name} was taken concurrently")
            return False
        finally:
            db.close()

    def release(self, name: str, holder: str):
        db = self._session_factory()
        try:
            db.query(JobLease).filter(JobLease.name == name, JobLease.holder == holder).delete(
                synchronize_session=False
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to release lease {name}: {e}")
        finally:
            db.close()
