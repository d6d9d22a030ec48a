"""Discord webhook notifications for sync and backfill events."""
import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Iterable, Optional
from urllib.parse import urlparse
from discord_webhook import DiscordWebhook, DiscordEmbed

logger = logging.getLogger("polymarket_pnl_tracker")

# Discord limits embeds to 25 fields
MAX_EMBED_FIELDS = 25


class WebhookValidationError(ValueError):
    """Raised when webhook URL validation fails."""
    pass


class AlertType(Enum):
    """Types of alerts that can be sent."""

    SYNC = "sync"
    BACKFILL = "backfill"
    ERROR = "error"
    INFO = "info"


# Color mapping for Discord embeds (decimal color values)
ALERT_COLORS = {
    AlertType.SYNC: 0x00FF00,  # Green
    AlertType.BACKFILL: 0x9B59B6,  # Purple
    AlertType.ERROR: 0xFF0000,  # Red
    AlertType.INFO: 0x0099FF,  # Blue
}

# Allowed webhook domains
ALLOWED_WEBHOOK_DOMAINS = [
    "discord.com",
    "discordapp.com",
]


def validate_webhook_url(url: str) -> str:
    """Validate webhook URL for security.

    Args:
        url: The webhook URL to validate

    Returns:
        The validated URL

    Raises:
        WebhookValidationError: If URL is invalid or not allowed
    """
    if not url:
        raise WebhookValidationError("Webhook URL cannot be empty")

    parsed = urlparse(url)

    if parsed.scheme != "https":
        raise WebhookValidationError("Webhook URL must use HTTPS")

    domain = parsed.netloc.lower()
    if not any(domain.endswith(allowed) for allowed in ALLOWED_WEBHOOK_DOMAINS):
        raise WebhookValidationError(
            f"Webhook domain not allowed: {domain}. Must be Discord."
        )

    if "/api/webhooks/" not in parsed.path:
        raise WebhookValidationError("Invalid Discord webhook URL format")

    return url


class NotificationService:
    """Service for sending Discord webhook notifications."""

    def __init__(self, webhook_url: Optional[str] = None):
        """Initialize notification service.

        Args:
            webhook_url: Discord webhook URL. If None, notifications are disabled.

        Raises:
            WebhookValidationError: If webhook URL is invalid
        """
        if webhook_url:
            self.webhook_url = validate_webhook_url(webhook_url)
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    def _send_embed(
        self,
        title: str,
        description: str,
        alert_type: AlertType,
        fields: Optional[dict] = None,
    ) -> bool:
        """Send a Discord embed notification.

        Returns:
            True if sent successfully, False otherwise.
        """
        if not self.enabled:
            logger.debug("Notifications disabled, skipping webhook")
            return False

        try:
            webhook = DiscordWebhook(url=self.webhook_url)
            embed = DiscordEmbed(
                title=title,
                description=description,
                color=ALERT_COLORS.get(alert_type, 0x808080),
            )
            embed.set_timestamp(datetime.now(UTC).isoformat())
            embed.set_footer(text="Polymarket PnL Tracker")

            if fields:
                for name, value in list(fields.items())[:MAX_EMBED_FIELDS]:
                    embed.add_embed_field(
                        name=name, value=str(value), inline=True
                    )

            webhook.add_embed(embed)
            response = webhook.execute()

            if response.status_code in (200, 204):
                return True
            else:
                logger.warning(
                    f"Webhook returned status {response.status_code}"
                )
                return False

        except Exception as e:
            logger.error(f"Failed to send notification: {e}")
            return False

    def send_sync_failure_alert(self, username: str, error: str) -> bool:
        """Send an alert for an account that failed to sync.

        Args:
            username: Account that failed
            error: Error message
        """
        title = "❌ Sync Failed"
        description = f"Account **{username}** could not be synced"
        fields = {"Error": error[:1024]}  # Discord field limit
        return self._send_embed(title, description, AlertType.ERROR, fields)

    def send_backfill_summary(self, results: Iterable) -> bool:
        """Send a summary of a backfill run, one field per account."""
        results = list(results)
        title = "📊 Backfill Completed"
        description = f"Rebuilt P&L history for {len(results)} account(s)"
        fields = {
            result.username: (
                f"{result.snapshots_created} snapshots, "
                f"realized ${result.total_realized_pnl:,.2f}"
            )
            for result in results
        }
        return self._send_embed(title, description, AlertType.BACKFILL, fields)

    def send_startup_notification(
        self,
        account_count: int,
        interval_minutes: float,
    ) -> bool:
        """Send a startup notification.

        Args:
            account_count: Number of tracked accounts
            interval_minutes: Sync interval
        """
        title = "🚀 PnL Tracker Started"
        description = f"Now tracking {account_count} account(s)"
        fields = {"Sync Interval": f"{interval_minutes:g} min"}
        return self._send_embed(title, description, AlertType.INFO, fields)

    def send_shutdown_notification(self, reason: str = "Manual shutdown") -> bool:
        """Send a shutdown notification."""
        title = "🛑 PnL Tracker Stopped"
        description = f"Reason: {reason}"
        return self._send_embed(title, description, AlertType.INFO)
