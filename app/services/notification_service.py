"""
Notification service for alert triggers
"""
import asyncio
import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import List, Optional, TYPE_CHECKING

from app.core.config import settings

if TYPE_CHECKING:
    from app.services.alert_evaluator import AlertTrigger

logger = logging.getLogger(__name__)


class NotificationService:
    """Delivers alert messages by log and, when configured, by email"""

    def __init__(self):
        logger.info("Notification service initialized")

    async def send_notification(self, recipient: Optional[str], subject: str, message: str) -> bool:
        """
        Send a message to a recipient

        Args:
            recipient: Email address, or any other identifier (falls back to EMAIL_TO)
            subject: Message subject
            message: Message body

        Returns:
            True if delivered, False otherwise
        """
        logger.info(f"NOTIFY [{recipient or 'default'}]: {subject} - {message}")

        if not settings.EMAIL_ENABLED:
            return True

        recipients = [recipient] if recipient and "@" in recipient else settings.get_email_recipients()
        return await self._send_email(subject, message, recipients)

    async def send_alert_trigger(self, trigger: "AlertTrigger", recipient: Optional[str] = None) -> bool:
        subject = f"Price alert: {trigger.symbol} {trigger.alert_type.replace('_', ' ')}"
        body = f"""
{trigger.message}

Alert Details:
- Symbol: {trigger.symbol}
- Type: {trigger.alert_type}
- Target Price: ${trigger.target_price:,.2f}
- Current Price: ${trigger.current_price:,.2f}
- Triggered: {trigger.triggered_at.strftime('%Y-%m-%d %H:%M:%S UTC')}
"""
        return await self.send_notification(recipient, subject, body)

    async def _send_email(self, subject: str, body: str, recipients: List[str]) -> bool:
        user = settings.EMAIL_USER
        password = settings.EMAIL_PASSWORD
        if not all([user, password, settings.EMAIL_HOST]) or not recipients:
            logger.warning("Email notifications not configured")
            return False

        msg = MIMEMultipart()
        msg['From'] = user
        msg['To'] = ", ".join(recipients)
        msg['Subject'] = subject
        msg.attach(MIMEText(body, 'plain'))

        try:
            await asyncio.to_thread(self._deliver, user, password, recipients, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email: {e}")
            return False

        logger.info(f"Email sent successfully: {subject}")
        return True

    @staticmethod
    def _deliver(user: str, password: str, recipients: List[str], text: str):
        with smtplib.SMTP(settings.EMAIL_HOST, settings.EMAIL_PORT, timeout=settings.EMAIL_TIMEOUT_SECONDS) as server:
            server.starttls()
            server.login(user, password)
            server.sendmail(user, recipients, text)

    def is_email_enabled(self) -> bool:
        """Check if email notifications are enabled"""
        return settings.EMAIL_ENABLED and all([
            settings.EMAIL_USER,
            settings.EMAIL_PASSWORD,
            settings.EMAIL_HOST,
        ])

    async def test_notification(self) -> bool:
        """Send test notification to verify configuration"""
        result = await self.send_notification(
            None,
            "Test Notification",
            "This is a test notification to verify the notification system is working correctly.",
        )
        if result:
            logger.info("Test notification sent successfully")
        else:
            logger.warning("Test notification failed")
        return result
