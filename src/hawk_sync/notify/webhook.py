# =============================================================================
# Outbound Notifications
# =============================================================================
# Priority messages (by default those classified "interested") are pushed to
# two kinds of HTTP endpoints:
#
#   WebhookNotifier   generic JSON webhook (Zapier, n8n, your own service)
#   SlackNotifier     Slack incoming webhook, per-account URL or a default
#
# Both raise DownstreamError on failure; the message processor logs it and
# moves on. A notification is never retried.
# =============================================================================

import logging
import time

import httpx

from hawk_sync import __app_name__, __version__
from hawk_sync.core import DownstreamError, NormalizedMessage, utcnow

logger = logging.getLogger(__name__)

WEBHOOK_EVENT = "email.interested"
PAYLOAD_VERSION = "1.0.0"
PREVIEW_LENGTH = 300

# Slack's green for "good news"
SLACK_COLOR = "#2eb886"


class _HTTPNotifier:
    """Shared httpx client handling for the notifiers."""

    DEFAULT_TIMEOUT = 10.0

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"User-Agent": f"{__app_name__}/{__version__}"},
            )
        return self._http_client

    async def _post(self, url: str, payload: dict) -> None:
        try:
            response = await self._client().post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DownstreamError(
                f"{url} answered HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise DownstreamError(f"POST to {url} failed: {e}") from e

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None


class WebhookNotifier(_HTTPNotifier):
    """
    Posts a JSON event for every priority message.

    Usage:
        >>> notifier = WebhookNotifier("https://hooks.example.com/mail")
        >>> await notifier.notify(message)
    """

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = _HTTPNotifier.DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(http_client, timeout)
        self.url = url

    def build_payload(self, message: NormalizedMessage) -> dict:
        """The JSON body sent for a message."""
        processing_ms = int((utcnow() - message.processed_at).total_seconds() * 1000)
        return {
            "event": WEBHOOK_EVENT,
            "timestamp": utcnow().isoformat(),
            "data": {
                "email": {
                    "id": message.id,
                    "messageId": message.message_id,
                    "accountId": message.account_id,
                    "from": message.sender,
                    "to": list(message.recipients),
                    "subject": message.subject,
                    "date": message.date.isoformat(),
                    "folder": message.folder,
                    "aiCategory": message.category.value,
                    "aiConfidence": message.confidence,
                    "preview": message.preview(PREVIEW_LENGTH),
                },
                "metadata": {
                    "processingTime": max(0, processing_ms),
                    "source": __app_name__,
                    "version": PAYLOAD_VERSION,
                },
            },
        }

    async def notify(self, message: NormalizedMessage) -> None:
        start = time.monotonic()
        await self._post(self.url, self.build_payload(message))
        logger.info(
            f"Webhook delivered for {message.id} in {time.monotonic() - start:.2f}s"
        )


class SlackNotifier(_HTTPNotifier):
    """
    Posts a Slack message for every priority message.

    Accounts can have their own incoming-webhook URL; everything else goes
    to the default one. Messages for accounts with neither are skipped.
    """

    def __init__(
        self,
        default_url: str = "",
        account_urls: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = _HTTPNotifier.DEFAULT_TIMEOUT,
    ) -> None:
        super().__init__(http_client, timeout)
        self.default_url = default_url
        self.account_urls = dict(account_urls or {})

    def url_for(self, account_id: str) -> str:
        return self.account_urls.get(account_id) or self.default_url

    def build_payload(self, message: NormalizedMessage) -> dict:
        sender = message.sender_name or message.sender
        return {
            "text": f'New "Interested" Email Received from {sender}!',
            "attachments": [
                {
                    "color": SLACK_COLOR,
                    "fields": [
                        {"title": "From", "value": message.sender, "short": True},
                        {"title": "Subject", "value": message.subject, "short": True},
                        {
                            "title": "Date",
                            "value": message.date.strftime("%Y-%m-%d %H:%M UTC"),
                            "short": True,
                        },
                        {
                            "title": "Confidence",
                            "value": f"{message.confidence:.0%}",
                            "short": True,
                        },
                        {"title": "Preview", "value": message.preview(200), "short": False},
                    ],
                }
            ],
        }

    async def notify(self, message: NormalizedMessage) -> None:
        url = self.url_for(message.account_id)
        if not url:
            logger.debug(f"No Slack webhook for account {message.account_id}")
            return
        await self._post(url, self.build_payload(message))
        logger.info(f"Slack notification sent for {message.id}")
