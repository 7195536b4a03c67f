"""Webhook alerts for outage transitions with retry and cooldown."""

import logging
import threading
import time
from datetime import UTC, datetime

import requests

from .config import AlertsConfig, WebhookConfig
from .models import TRANSITION_CLOSED, TRANSITION_OPENED, OutageTransition, Target

logger = logging.getLogger(__name__)

EVENT_OUTAGE_STARTED = "outage_started"
EVENT_OUTAGE_RESOLVED = "outage_resolved"
EVENT_TEST = "test"

WEBHOOK_TIMEOUT = 10


class Alerter:
    """Sends webhook alerts when an outage opens or closes."""

    def __init__(self, config: AlertsConfig, max_retries: int = 3, retry_delay: int = 2):
        """Initialize alerter with configuration.

        Args:
            config: Alerts configuration with webhooks
            max_retries: Maximum number of retry attempts for failed webhooks
            retry_delay: Base delay in seconds between retries (doubles per attempt)
        """
        self._config = config
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        # {(target_id, event): timestamp of last delivered alert}
        self._last_alert_time: dict[tuple[int, str], float] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return any(webhook.enabled for webhook in self._config.webhooks)

    def process_transition(self, target: Target, transition: OutageTransition) -> None:
        """Send alerts for an outage transition.

        Args:
            target: Target the transition belongs to
            transition: Transition emitted by the outage detector
        """
        if transition.kind == TRANSITION_OPENED:
            event = EVENT_OUTAGE_STARTED
        elif transition.kind == TRANSITION_CLOSED:
            event = EVENT_OUTAGE_RESOLVED
        else:
            return

        for webhook in self._config.webhooks:
            if not webhook.enabled:
                continue
            if event == EVENT_OUTAGE_STARTED and not webhook.on_outage:
                continue
            if event == EVENT_OUTAGE_RESOLVED and not webhook.on_recovery:
                continue

            if not self._is_cooldown_expired(target.id, event, webhook.cooldown_seconds):
                logger.debug("Webhook cooldown active for %s (%s), skipping", target.label, event)
                continue

            # Sent outside the lock; only the cooldown map is shared
            payload = self._build_payload(event, target, transition)
            if self._send_webhook(webhook, payload, target.label):
                with self._lock:
                    self._last_alert_time[(target.id, event)] = time.time()

    def _is_cooldown_expired(self, target_id: int, event: str, cooldown_seconds: int) -> bool:
        with self._lock:
            last_alert = self._last_alert_time.get((target_id, event))
        if last_alert is None:
            return True
        return time.time() - last_alert >= cooldown_seconds

    def _build_payload(self, event: str, target: Target, transition: OutageTransition) -> dict:
        outage = transition.outage
        payload = {
            "event": event,
            "target": {
                "id": target.id,
                "name": target.label,
                "address": target.address,
                "kind": target.kind,
            },
            "timestamp": datetime.now(UTC).isoformat(),
        }
        if outage is not None:
            payload["outage"] = {
                "id": outage.id,
                "started_at": outage.started_at.isoformat(),
                "ended_at": outage.ended_at.isoformat() if outage.ended_at else None,
                "duration_seconds": outage.duration_seconds,
                "consecutive_failures": outage.consecutive_failures_at_open,
            }
        return payload

    def _send_webhook(self, webhook: WebhookConfig, payload: dict, label: str) -> bool:
        """Post a payload with exponential backoff between attempts.

        Returns:
            True if the webhook accepted the payload.
        """
        retry_count = 0

        while retry_count <= self._max_retries:
            try:
                response = requests.post(webhook.url, json=payload, timeout=WEBHOOK_TIMEOUT)
                response.raise_for_status()
                logger.info("Webhook %s sent for %s to %s", payload["event"], label, webhook.url)
                return True

            except requests.RequestException as e:
                retry_count += 1
                if retry_count <= self._max_retries:
                    delay = self._retry_delay * (2 ** (retry_count - 1))
                    logger.warning(
                        "Webhook failed for %s (attempt %d/%d, retrying in %ds): %s",
                        label,
                        retry_count,
                        self._max_retries + 1,
                        delay,
                        e,
                    )
                    time.sleep(delay)
                else:
                    logger.error("Webhook failed for %s after %d attempts: %s", label, retry_count, e)

        return False

    def test_webhooks(self) -> dict[str, bool]:
        """Send a test payload to every configured webhook.

        Returns:
            Dictionary mapping webhook URLs to success status
        """
        results = {}

        for webhook in self._config.webhooks:
            if not webhook.enabled:
                results[webhook.url] = False
                continue

            payload = {
                "event": EVENT_TEST,
                "target": {"id": 0, "name": "TEST", "address": "192.0.2.1", "kind": "ipv4"},
                "timestamp": datetime.now(UTC).isoformat(),
            }
            try:
                response = requests.post(webhook.url, json=payload, timeout=WEBHOOK_TIMEOUT)
                response.raise_for_status()
                results[webhook.url] = True
                logger.info("Test webhook sent successfully to %s", webhook.url)
            except requests.RequestException as e:
                results[webhook.url] = False
                logger.error("Test webhook failed for %s: %s", webhook.url, e)

        return results
