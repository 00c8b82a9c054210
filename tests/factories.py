from app.core.clock import utc_now
from app.core.database import SessionLocal
from app.models.alert import Alert
from app.models.stock import Stock, UserStock


def create_stock(symbol: str, name: str = None) -> int:
    db = SessionLocal()
    try:
        stock = Stock(symbol=symbol, name=name or f"{symbol} Inc.", exchange="NASDAQ", currency="USD", is_active=True)
        db.add(stock)
        db.commit()
        return stock.id
    finally:
        db.close()


def create_alert(user_id: int, stock_id: int, alert_type: str, target_price: float, is_active: bool = True) -> int:
    db = SessionLocal()
    try:
        alert = Alert(
            user_id=user_id,
            stock_id=stock_id,
            alert_type=alert_type,
            target_price=target_price,
            is_active=is_active,
            created_at=utc_now(),
        )
        db.add(alert)
        db.commit()
        return alert.id
    finally:
        db.close()


def create_user_stock(user_id: int, stock_id: int) -> int:
    db = SessionLocal()
    try:
        row = UserStock(user_id=user_id, stock_id=stock_id, quantity=1.0, is_active=True)
        db.add(row)
        db.commit()
        return row.id
    finally:
        db.close()


def get_alert(alert_id: int) -> Alert:
    db = SessionLocal()
    try:
        alert = db.get(Alert, alert_id)
        db.expunge(alert)
        return alert
    finally:
        db.close()
