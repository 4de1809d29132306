"""
Alert notification senders.

The variance detector hands every new high/critical alert to a
NotificationSender exactly once, when the alert is created. Two transports:
  - RedisAlertPublisher: pub/sub channel per store for live dashboards
  - EmailAlertSender:    SendGrid email to the on-call address
"""

import json
from typing import Any, Protocol

import redis.asyncio as aioredis
import sendgrid
import structlog
from sendgrid.helpers.mail import Mail

from alerts.store import ALL_PRODUCTS, AlertType, VarianceAlert
from core.config import get_settings

logger = structlog.get_logger()

# alert type → notification kind understood by the delivery side
NOTIFICATION_KINDS = {
    AlertType.ABNORMAL_LOSS: "high_loss",
    AlertType.UNUSUAL_FLOW: "unusual_flow",
    AlertType.CRITICAL_STOCK: "low_stock",
    AlertType.LOW_STOCK: "low_stock",
    AlertType.OVERSTOCK: "overstock",
}


class NotificationSender(Protocol):
    async def send(
        self,
        alert_kind: str,
        subject_label: str,
        store_label: str,
        details: dict[str, Any],
    ) -> None: ...


def notification_args(alert: VarianceAlert) -> tuple[str, str, str, dict[str, Any]]:
    """Map an alert onto the sender's (kind, subject, store, details) arguments."""
    subject = "All products" if alert.product_id == ALL_PRODUCTS else f"Product {alert.product_id}"
    details = {
        "alert_id": alert.id,
        "alert_type": alert.type.value,
        "title": alert.title,
        "message": alert.message,
        "severity": alert.severity.value,
        "details": alert.details.as_dict(),
        "detected_at": alert.detected_at.isoformat(),
    }
    return NOTIFICATION_KINDS[alert.type], subject, alert.store_id, details


class RedisAlertPublisher:
    """Publish alerts to `alerts:<store>` for real-time delivery."""

    def __init__(self, redis_url: str | None = None, channel_prefix: str = "alerts"):
        self.redis_url = redis_url or get_settings().redis_url
        self.channel_prefix = channel_prefix

    async def send(
        self,
        alert_kind: str,
        subject_label: str,
        store_label: str,
        details: dict[str, Any],
    ) -> None:
        payload = json.dumps(
            {
                "type": "alert",
                "kind": alert_kind,
                "subject": subject_label,
                "store": store_label,
                "payload": details,
            },
            default=str,
        )
        redis = aioredis.from_url(self.redis_url)
        try:
            subs = await redis.publish(f"{self.channel_prefix}:{store_label}", payload)
            logger.info("notifier.published", store=store_label, kind=alert_kind, subscribers=subs)
        finally:
            await redis.aclose()


class EmailAlertSender:
    """SendGrid email delivery. Only configured deployments send anything."""

    def __init__(self, to_email: str | None = None, api_key: str | None = None, from_email: str | None = None):
        settings = get_settings()
        self.to_email = to_email or settings.alert_to_email
        self.api_key = api_key or settings.sendgrid_api_key
        self.from_email = from_email or settings.alert_from_email

    async def send(
        self,
        alert_kind: str,
        subject_label: str,
        store_label: str,
        details: dict[str, Any],
    ) -> None:
        if not (self.to_email and self.api_key):
            logger.debug("notifier.email_disabled", store=store_label, kind=alert_kind)
            return

        severity = details.get("severity", "")
        subject = f"[{severity.upper()}] StockLedger {alert_kind.replace('_', ' ')}: {subject_label} @ {store_label}"
        html_content = f"""
        <div style="font-family: sans-serif; max-width: 600px;">
          <h2 style="margin: 0 0 12px;">{details.get('title') or alert_kind.replace('_', ' ').title()}</h2>
          <p>{details.get('message', '')}</p>
          <p><strong>Store:</strong> {store_label}<br><strong>Subject:</strong> {subject_label}</p>
        </div>
        """
        sg = sendgrid.SendGridAPIClient(api_key=self.api_key)
        email = Mail(
            from_email=self.from_email,
            to_emails=self.to_email,
            subject=subject,
            html_content=html_content,
        )
        response = sg.send(email)
        if response.status_code not in (200, 201, 202):
            raise RuntimeError(f"SendGrid returned {response.status_code}")


class FanoutSender:
    """Send through several transports; a failing one doesn't stop the others."""

    def __init__(self, *senders: NotificationSender):
        self.senders = senders

    async def send(
        self,
        alert_kind: str,
        subject_label: str,
        store_label: str,
        details: dict[str, Any],
    ) -> None:
        errors = []
        for sender in self.senders:
            try:
                await sender.send(alert_kind, subject_label, store_label, details)
            except Exception as exc:
                logger.error("notifier.failed", sender=type(sender).__name__, store=store_label, error=str(exc))
                errors.append(exc)
        if errors and len(errors) == len(self.senders):
            raise errors[0]
