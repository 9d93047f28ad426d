"""Best-effort CRM sync for successful payments.

Runs after the ledger and submission writes are committed, so a failure here
is logged and swallowed; it never turns a processed event into a failed one.
"""
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional

import httpx

from app.core.config import ProcessorConfig, NotifyTarget
from app.core.errors import NotificationError
from app.core.logging import crm_logger
from app.core.metrics import crm_notifications_counter

logger = crm_logger


@dataclass
class CrmNotification:
    eventId: str
    eventType: str
    site: str
    formSlug: Optional[str]
    pricingTier: Optional[str]
    formSubmissionId: Optional[str]
    paymentIntentId: str
    amountCents: int
    currency: str
    receiptEmail: Optional[str]
    metadata: Optional[Dict[str, Any]]


class CrmNotifier:
    """POSTs payment notifications to per-site CRM webhooks with bounded retries"""

    def __init__(
        self,
        config: ProcessorConfig,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.targets = config.notify_targets
        self.attempts = max(1, config.notify_attempts)
        self.timeout = config.notify_timeout_seconds
        self.backoff = config.notify_backoff_seconds
        self._transport = transport
        self._sleep = sleep

    def notify(self, notification: CrmNotification) -> bool:
        """Deliver a notification if the site has a CRM target.

        Returns True when delivered, False when skipped or failed. Never raises.
        """
        if notification.site not in self.targets:
            return False

        target = self.targets[notification.site]
        if target is None:
            logger.error(f"CRM webhook not configured for site {notification.site}")
            crm_notifications_counter.labels(status="not_configured").inc()
            return False

        try:
            self._post_with_retries(target, asdict(notification))
        except NotificationError as e:
            logger.error(
                f"CRM notification failed for event {notification.eventId} "
                f"(site={notification.site}) after {self.attempts} attempts: {e}"
            )
            crm_notifications_counter.labels(status="failed").inc()
            return False
        except Exception as e:
            # Bad target URL, unencodable metadata: still never fails the event
            logger.error(
                f"CRM notification for event {notification.eventId} (site={notification.site}) "
                f"could not be sent: {e.__class__.__name__}: {e}",
                exc_info=True
            )
            crm_notifications_counter.labels(status="failed").inc()
            return False

        crm_notifications_counter.labels(status="delivered").inc()
        logger.info(f"CRM notified for event {notification.eventId} (site={notification.site})")
        return True

    def _post_with_retries(self, target: NotifyTarget, body: Dict[str, Any]) -> None:
        last_error: Optional[str] = None
        headers = {"Authorization": f"Bearer {target.secret}"}

        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(self.attempts):
                try:
                    response = client.post(target.url, json=body, headers=headers)
                    if response.is_success:
                        return
                    last_error = f"HTTP {response.status_code}: {response.text[:300]}"
                except httpx.HTTPError as e:
                    last_error = f"{e.__class__.__name__}: {e}"

                logger.warning(f"CRM notification attempt {attempt + 1}/{self.attempts} failed: {last_error}")
                if attempt < self.attempts - 1:
                    # Linear backoff
                    self._sleep(self.backoff * (attempt + 1))

        raise NotificationError(last_error or "unknown_error")
