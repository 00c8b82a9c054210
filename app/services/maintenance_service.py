"""
Maintenance jobs for portfolio data
"""
import logging
from typing import Any, Dict

from app.core.database import SessionLocal
from app.models.stock import Stock, UserStock

logger = logging.getLogger(__name__)

ORPHAN_ACTIONS = ("dryRun", "deactivate", "delete")
SAMPLE_SIZE = 10


class MaintenanceService:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or SessionLocal

    def fix_orphans(self, action: str = "dryRun") -> Dict[str, Any]:
        """Find portfolio rows whose stock no longer exists and optionally repair them"""
        if action not in ORPHAN_ACTIONS:
            raise ValueError(f"action must be one of: {', '.join(ORPHAN_ACTIONS)}")

        db = self._session_factory()
        try:
            orphans = (
                db.query(UserStock)
                .outerjoin(Stock, Stock.id == UserStock.stock_id)
                .filter(Stock.id.is_(None))
                .order_by(UserStock.id)
                .all()
            )
            sample = [
                {"id": row.id, "user_id": row.user_id, "stock_id": row.stock_id, "is_active": row.is_active}
                for row in orphans[:SAMPLE_SIZE]
            ]
            ids = [row.id for row in orphans]

            affected = 0
            if ids and action == "deactivate":
                affected = (
                    db.query(UserStock)
                    .filter(UserStock.id.in_(ids))
                    .update({UserStock.is_active: False}, synchronize_session=False)
                )
            elif ids and action == "delete":
                affected = db.query(UserStock).filter(UserStock.id.in_(ids)).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if ids:
            logger.info(f"Orphaned portfolio rows: {len(ids)} found, {affected} affected ({action})")
        return {
            "totalOrphans": len(ids),
            "action": action,
            "affected": affected,
            "sample": sample,
        }
