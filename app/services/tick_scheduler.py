"""
Alerts tick: refresh prices for alert-relevant stocks and evaluate their alerts.

Runs once per external trigger (cron hitting /jobs/alerts-tick). Stocks are
processed one at a time with a pause in between to stay inside shared provider
quotas; a failing stock is skipped and never aborts the run.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from app.core.clock import utc_now
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import PersistenceFailure
from app.models.alert import Alert
from app.models.stock import Stock
from app.services.alert_evaluator import AlertEvaluator
from app.services.data_service import MarketDataService
from app.services.job_lease_service import JobLeaseService
from app.services.price_store import PriceStore

logger = logging.getLogger(__name__)

TICK_LEASE_NAME = "alerts-tick"


@dataclass
class TickRun:
    stocks_checked: int = 0
    prices_updated: int = 0
    alerts_triggered: int = 0
    skipped: bool = False
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "stocksChecked": self.stocks_checked,
            "pricesUpdated": self.prices_updated,
            "alertsTriggered": self.alerts_triggered,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.skipped:
            data["skipped"] = True
        return data


class AlertsTickScheduler:
    """One sequential sweep over the stocks that active alerts point at"""

    def __init__(
        self,
        market_data: MarketDataService,
        price_store: Optional[PriceStore] = None,
        evaluator: Optional[AlertEvaluator] = None,
        lease_service: Optional[JobLeaseService] = None,
        session_factory=None,
    ):
        self.market_data = market_data
        self.price_store = price_store or PriceStore()
        self.evaluator = evaluator or AlertEvaluator(self.price_store)
        self.lease_service = lease_service or JobLeaseService()
        self._session_factory = session_factory or SessionLocal
        self.started_at = utc_now()
        self.last_run: Optional[TickRun] = None

    def get_alert_stocks(self) -> List[Tuple[int, str]]:
        """Distinct (stock_id, symbol) pairs referenced by active alerts"""
        db = self._session_factory()
        try:
            rows = (
                db.query(Stock.id, Stock.symbol)
                .join(Alert, Alert.stock_id == Stock.id)
                .filter(Alert.is_active.is_(True))
                .distinct()
                .order_by(Stock.id)
                .all()
            )
            return [(stock_id, symbol) for stock_id, symbol in rows]
        finally:
            db.close()

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """True once two ALERT_CHECK_INTERVAL periods pass without a completed sweep"""
        now = now or utc_now()
        reference = self.last_run.timestamp if self.last_run else self.started_at
        return now - reference > timedelta(seconds=2 * settings.ALERT_CHECK_INTERVAL)

    async def run(self) -> TickRun:
        """
        Execute one tick.

        Raises:
            SQLAlchemyError: the alert-relevant stocks could not be listed
        """
        holder = None
        if settings.TICK_LEASE_ENABLED:
            holder = uuid.uuid4().hex
            if not self.lease_service.acquire(TICK_LEASE_NAME, holder, settings.TICK_LEASE_SECONDS):
                logger.info("Alerts tick skipped: another run holds the lease")
                return TickRun(skipped=True)

        try:
            self.last_run = await self._sweep()
            return self.last_run
        finally:
            if holder is not None:
                self.lease_service.release(TICK_LEASE_NAME, holder)

    async def _sweep(self) -> TickRun:
        run = TickRun()
        stocks = self.get_alert_stocks()
        logger.info(f"Alerts tick started for {len(stocks)} stock(s)")

        for index, (stock_id, symbol) in enumerate(stocks):
            if index:
                await asyncio.sleep(settings.ALERT_TICK_PACING_SECONDS)

            run.stocks_checked += 1
            try:
                await self._refresh_stock(run, stock_id, symbol)
            except PersistenceFailure as e:
                logger.error(f"Skipping {symbol}: {e}")
            except Exception as e:
                logger.error(f"Error processing {symbol} in alerts tick: {e}")

        run.timestamp = utc_now()
        logger.info(
            f"Alerts tick completed: checked={run.stocks_checked} "
            f"updated={run.prices_updated} triggered={run.alerts_triggered}"
        )
        return run

    async def _refresh_stock(self, run: TickRun, stock_id: int, symbol: str):
        quote = await self.market_data.get_quote(symbol, use_cache=False)
        if quote is None:
            logger.warning(f"No quote for {symbol}, keeping previous price")
            return

        self.price_store.create_price(stock_id, quote.to_price_fields())
        run.prices_updated += 1

        triggers = await self.evaluator.check_stock_alerts(stock_id)
        run.alerts_triggered += len(triggers)
