"""
Price snapshot persistence with a single latest row per stock
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from app.core.clock import utc_now
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import PersistenceFailure
from app.models.stock import Stock
from app.models.stock_price import StockPrice

logger = logging.getLogger(__name__)

PRICE_FIELDS = (
    "price",
    "change",
    "change_percent",
    "volume",
    "market_cap",
    "fifty_two_week_low",
    "fifty_two_week_high",
    "previous_close",
    "day_high",
    "day_low",
    "source",
    "timestamp",
)


def serialize_price(row: StockPrice) -> Dict[str, Any]:
    data = {"id": row.id, "stock_id": row.stock_id, "is_latest": bool(row.is_latest)}
    for name in PRICE_FIELDS:
        data[name] = getattr(row, name)
    data["timestamp"] = row.timestamp.isoformat() if row.timestamp else None
    return data


class PriceStore:
    """Writes and reads stock price snapshots"""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or SessionLocal

    @staticmethod
    def _lock_stock(db, stock_id: int) -> Stock:
        # Row lock serializes writers of the same stock on databases that support it
        stock = db.query(Stock).filter(Stock.id == stock_id).with_for_update().first()
        if stock is None:
            raise PersistenceFailure(f"Stock {stock_id} does not exist", {"stock_id": stock_id})
        return stock

    def create_price(self, stock_id: int, fields: Dict[str, Any], is_latest: bool = True) -> Dict[str, Any]:
        """
        Insert a price snapshot.

        With is_latest the previous latest row is demoted in the same
        transaction, so readers never see zero or two latest rows.

        Raises:
            PersistenceFailure: the transaction was rolled back
        """
        values = {name: fields[name] for name in PRICE_FIELDS if fields.get(name) is not None}
        if values.get("price") is None:
            raise PersistenceFailure("Price snapshot requires a price", {"stock_id": stock_id})
        values.setdefault("timestamp", utc_now())
        values.setdefault("source", "yahoo")

        db = self._session_factory()
        try:
            self._lock_stock(db, stock_id)
            if is_latest:
                db.query(StockPrice).filter(
                    StockPrice.stock_id == stock_id,
                    StockPrice.is_latest.is_(True),
                ).update({StockPrice.is_latest: False}, synchronize_session=False)

            row = StockPrice(stock_id=stock_id, is_latest=is_latest, **values)
            db.add(row)
            db.commit()
            return serialize_price(row)
        except PersistenceFailure:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Price write for stock {stock_id} rolled back: {e}")
            raise PersistenceFailure(f"Failed to store price for stock {stock_id}", {"stock_id": stock_id}) from e
        finally:
            db.close()

    def update_latest_price_flag(self, stock_id: int, price_id: int) -> Dict[str, Any]:
        """Make an existing snapshot the latest one, e.g. after a correction."""
        db = self._session_factory()
        try:
            self._lock_stock(db, stock_id)
            target = (
                db.query(StockPrice)
                .filter(StockPrice.id == price_id, StockPrice.stock_id == stock_id)
                .first()
            )
            if target is None:
                raise PersistenceFailure(
                    f"Price {price_id} does not belong to stock {stock_id}",
                    {"stock_id": stock_id, "price_id": price_id},
                )

            db.query(StockPrice).filter(
                StockPrice.stock_id == stock_id,
                StockPrice.is_latest.is_(True),
                StockPrice.id != price_id,
            ).update({StockPrice.is_latest: False}, synchronize_session=False)
            target.is_latest = True
            db.commit()
            return serialize_price(target)
        except PersistenceFailure:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceFailure(
                f"Failed to move latest price for stock {stock_id}",
                {"stock_id": stock_id, "price_id": price_id},
            ) from e
        finally:
            db.close()

    def get_latest_price(self, stock_id: int) -> Optional[Dict[str, Any]]:
        db = self._session_factory()
        try:
            row = (
                db.query(StockPrice)
                .filter(StockPrice.stock_id == stock_id, StockPrice.is_latest.is_(True))
                .first()
            )
            return serialize_price(row) if row else None
        finally:
            db.close()

    def get_multiple_latest_prices(self, stock_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        ids = list(set(stock_ids))
        if not ids:
            return {}
        db = self._session_factory()
        try:
            rows = (
                db.query(StockPrice)
                .filter(StockPrice.stock_id.in_(ids), StockPrice.is_latest.is_(True))
                .all()
            )
            return {row.stock_id: serialize_price(row) for row in rows}
        finally:
            db.close()

    def get_historical_prices(self, stock_id: int, days: int = 30) -> List[Dict[str, Any]]:
        since = utc_now() - timedelta(days=days)
        db = self._session_factory()
        try:
            rows = (
                db.query(StockPrice)
                .filter(StockPrice.stock_id == stock_id, StockPrice.timestamp >= since)
                .order_by(StockPrice.timestamp.desc(), StockPrice.id.desc())
                .all()
            )
            return [serialize_price(row) for row in rows]
        finally:
            db.close()

    def cleanup_old_prices(self, stock_id: Optional[int] = None, keep_days: Optional[int] = None) -> int:
        """Delete snapshots older than keep_days. Latest rows always survive."""
        keep_days = keep_days or settings.PRICE_RETENTION_DAYS
        cutoff = utc_now() - timedelta(days=keep_days)
        db = self._session_factory()
        try:
            query = db.query(StockPrice).filter(
                StockPrice.timestamp < cutoff,
                StockPrice.is_latest.is_(False),
            )
            if stock_id is not None:
                query = query.filter(StockPrice.stock_id == stock_id)
            deleted = query.delete(synchronize_session=False)
            db.commit()
            if deleted:
                logger.info(f"Removed {deleted} price snapshot(s) older than {keep_days} days")
            return deleted
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceFailure("Failed to clean up old prices", {"stock_id": stock_id}) from e
        finally:
            db.close()
