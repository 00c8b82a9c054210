"""
Alert evaluation against the latest stored prices
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from app.core.clock import day_start, utc_now
from app.core.config import settings
from app.core.database import SessionLocal
from app.models.alert import ALERT_TYPES, Alert
from app.models.stock import Stock
from app.services.notification_service import NotificationService
from app.services.price_store import PriceStore

logger = logging.getLogger(__name__)


@dataclass
class AlertTrigger:
    alert_id: int
    user_id: int
    stock_id: int
    symbol: str
    alert_type: str
    target_price: float
    current_price: float
    message: str
    triggered_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "user_id": self.user_id,
            "stock_id": self.stock_id,
            "symbol": self.symbol,
            "alert_type": self.alert_type,
            "target_price": self.target_price,
            "current_price": self.current_price,
            "message": self.message,
            "triggered_at": self.triggered_at.isoformat(),
        }


def should_trigger(alert_type: str, current_price: float, target_price: float) -> bool:
    if alert_type in ("price_below", "cutoff_reached"):
        return current_price <= target_price
    if alert_type in ("price_above", "target_reached"):
        return current_price >= target_price
    return False


def build_alert_message(alert_type: str, symbol: str, name: Optional[str], target_price: float, current_price: float) -> str:
    label = f"{symbol} ({name})" if name else symbol
    current = f"${current_price:,.2f}"
    target = f"${target_price:,.2f}"
    if alert_type == "price_below":
        return f"{label} has dropped to {current}, below your alert price of {target}"
    if alert_type == "price_above":
        return f"{label} has risen to {current}, above your alert price of {target}"
    if alert_type == "target_reached":
        return f"Target reached! {label} has reached {current}, meeting your target of {target}"
    if alert_type == "cutoff_reached":
        return f"Cutoff alert: {label} has dropped to {current}, reaching your cutoff price of {target}"
    return f"Price alert for {symbol}: {current}"


class AlertEvaluator:
    """Flags active alerts whose threshold is met by the latest price"""

    def __init__(
        self,
        price_store: Optional[PriceStore] = None,
        notifier: Optional[NotificationService] = None,
        session_factory=None,
    ):
        self.price_store = price_store or PriceStore()
        self.notifier = notifier
        self._session_factory = session_factory or SessionLocal

    async def check_stock_alerts(self, stock_id: int) -> List[AlertTrigger]:
        """Evaluate every active alert on one stock against its latest price"""
        latest = self.price_store.get_latest_price(stock_id)
        if latest is None:
            logger.debug(f"No latest price for stock {stock_id}, skipping alert check")
            return []

        db = self._session_factory()
        try:
            alert_ids = [
                row[0]
                for row in db.query(Alert.id)
                .filter(Alert.stock_id == stock_id, Alert.is_active.is_(True))
                .order_by(Alert.id)
                .all()
            ]
        finally:
            db.close()

        triggers = self._evaluate(alert_ids, {stock_id: latest["price"]})
        await self._dispatch(triggers)
        return triggers

    async def check_user_alerts(self, user_id: int) -> List[AlertTrigger]:
        """Evaluate one user's active alerts, e.g. for an on-demand check"""
        return await self._check_active_alerts(Alert.user_id == user_id)

    async def check_all_alerts(self) -> List[AlertTrigger]:
        """
        Evaluate every active alert against the prices already stored.

        No quotes are fetched; alerts whose stock has no stored price are
        left alone.
        """
        return await self._check_active_alerts()

    async def _check_active_alerts(self, *criteria) -> List[AlertTrigger]:
        db = self._session_factory()
        try:
            rows = (
                db.query(Alert.id, Alert.stock_id)
                .filter(Alert.is_active.is_(True), *criteria)
                .order_by(Alert.id)
                .all()
            )
        finally:
            db.close()

        by_stock: Dict[int, List[int]] = defaultdict(list)
        for alert_id, stock_id in rows:
            by_stock[stock_id].append(alert_id)

        latest = self.price_store.get_multiple_latest_prices(by_stock.keys())
        prices = {stock_id: snapshot["price"] for stock_id, snapshot in latest.items()}
        alert_ids = [alert_id for stock_id, ids in by_stock.items() if stock_id in prices for alert_id in ids]

        triggers = self._evaluate(alert_ids, prices)
        await self._dispatch(triggers)
        return triggers

    def _evaluate(self, alert_ids: List[int], prices: Dict[int, float]) -> List[AlertTrigger]:
        triggers = []
        for alert_id in alert_ids:
            try:
                trigger = self._evaluate_one(alert_id, prices)
            except SQLAlchemyError as e:
                logger.error(f"Error evaluating alert {alert_id}: {e}")
                continue
            if trigger is not None:
                triggers.append(trigger)
        return triggers

    def _evaluate_one(self, alert_id: int, prices: Dict[int, float]) -> Optional[AlertTrigger]:
        db = self._session_factory()
        try:
            alert = db.get(Alert, alert_id)
            if alert is None or not alert.is_active:
                return None
            current_price = prices.get(alert.stock_id)
            if current_price is None:
                return None
            if alert.alert_type not in ALERT_TYPES:
                logger.warning(f"Alert {alert_id} has unknown type {alert.alert_type}")
                return None
            if not should_trigger(alert.alert_type, current_price, alert.target_price):
                return None

            stock = db.get(Stock, alert.stock_id)
            symbol = stock.symbol if stock else str(alert.stock_id)
            now = utc_now()
            message = build_alert_message(
                alert.alert_type, symbol, stock.name if stock else None, alert.target_price, current_price
            )

            alert.triggered_at = now
            alert.current_price = current_price
            alert.message = message
            if settings.ALERT_TRIGGER_MODE == "edge":
                alert.is_active = False
            db.commit()

            logger.info(f"Alert {alert.id} triggered: {message}")
            return AlertTrigger(
                alert_id=alert.id,
                user_id=alert.user_id,
                stock_id=alert.stock_id,
                symbol=symbol,
                alert_type=alert.alert_type,
                target_price=alert.target_price,
                current_price=current_price,
                message=message,
                triggered_at=now,
            )
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    async def _dispatch(self, triggers: List[AlertTrigger]):
        if self.notifier is None:
            return
        for trigger in triggers:
            try:
                sent = await self.notifier.send_alert_trigger(trigger, recipient=f"user-{trigger.user_id}")
            except Exception as e:
                logger.error(f"Notification for alert {trigger.alert_id} failed: {e}")
                continue
            if not sent:
                logger.warning(f"Notification for alert {trigger.alert_id} was not delivered")
            elif self.notifier.is_email_enabled():
                self._mark_email_sent(trigger.alert_id)

    def _mark_email_sent(self, alert_id: int):
        db = self._session_factory()
        try:
            db.query(Alert).filter(Alert.id == alert_id).update(
                {Alert.email_sent: True, Alert.email_sent_at: utc_now()},
                synchronize_session=False,
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not record delivery for alert {alert_id}: {e}")
        finally:
            db.close()

    def get_alert_stats(self, user_id: int) -> Dict[str, Any]:
        today = day_start(utc_now())
        db = self._session_factory()
        try:
            total = db.query(func.count(Alert.id)).filter(Alert.user_id == user_id).scalar() or 0
            active = (
                db.query(func.count(Alert.id))
                .filter(Alert.user_id == user_id, Alert.is_active.is_(True))
                .scalar()
                or 0
            )
            triggered_today = (
                db.query(func.count(Alert.id))
                .filter(Alert.user_id == user_id, Alert.triggered_at >= today)
                .scalar()
                or 0
            )
            by_type = dict(
                db.query(Alert.alert_type, func.count(Alert.id))
                .filter(Alert.user_id == user_id)
                .group_by(Alert.alert_type)
                .all()
            )
        finally:
            db.close()

        return {
            "total_alerts": total,
            "active_alerts": active,
            "triggered_today": triggered_today,
            "by_type": {alert_type: by_type.get(alert_type, 0) for alert_type in ALERT_TYPES},
        }
