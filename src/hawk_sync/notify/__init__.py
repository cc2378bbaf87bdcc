# =============================================================================
# Notification Module
# =============================================================================
# HTTP notifiers for priority messages (generic webhook and Slack).
# =============================================================================

from hawk_sync.notify.webhook import SlackNotifier, WebhookNotifier

__all__ = ["SlackNotifier", "WebhookNotifier"]
