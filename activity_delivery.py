#!/usr/bin/env python3
"""
Activity Delivery

Delivers activities to remote actor inboxes with HTTP signature authentication.
Transient failures (network errors, 429, 5xx) are retried with exponential
backoff; permanent failures (other 4xx, unusable inbox URL) are not.
"""

import json
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from email.utils import formatdate
from typing import Optional
from urllib.parse import urlparse

import requests

import http_signatures
from config_utils import CONTENT_TYPE_AP
from key_store import KeyPair

logger = logging.getLogger(__name__)


class DeliveryRejected(Exception):
    """Permanent delivery failure; retrying would not help"""

    def __init__(self, inbox_url: str, reason: str, status_code: Optional[int] = None):
        super().__init__(f"Delivery to {inbox_url} rejected: {reason}")
        self.inbox_url = inbox_url
        self.reason = reason
        self.status_code = status_code


@dataclass(frozen=True)
class DeliveryResult:
    inbox_url: str
    success: bool
    attempts: int
    status_code: Optional[int] = None


def is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


class DeliveryDispatcher:
    def __init__(self, config: dict):
        delivery = config.get('delivery', {})
        self.max_attempts = max(1, int(delivery.get('max_attempts', 5)))
        self.backoff_seconds = float(delivery.get('backoff_seconds', 1.0))
        self.timeout = delivery.get('timeout', 30)
        self.user_agent = config['server'].get('user_agent', 'SoloFedi/1.0')

        workers = int(delivery.get('workers', 4))
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix='delivery') if workers > 0 else None

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt"""
        return self.backoff_seconds * (2 ** (attempt - 1))

    def deliver(self, activity: dict, inbox_url: str, key_pair: KeyPair, key_id: str) -> DeliveryResult:
        """
        Deliver an activity to a remote inbox with HTTP signature

        Args:
            activity: Activity object to deliver
            inbox_url: Target inbox URL
            key_pair: Key pair of the sending actor
            key_id: Public key id published on the sending actor

        Returns:
            DeliveryResult: success=False once transient retries are exhausted

        Raises:
            DeliveryRejected: The inbox URL is unusable or the server answered with a 4xx
        """
        parsed = urlparse(inbox_url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise DeliveryRejected(inbox_url, "malformed inbox URL")

        path = parsed.path or '/'
        if parsed.query:
            path += f"?{parsed.query}"

        body = json.dumps(activity).encode('utf-8')
        status_code = None

        for attempt in range(1, self.max_attempts + 1):
            # Date is part of the signature, so sign afresh on every attempt
            headers = {
                'Host': parsed.netloc,
                'Date': formatdate(timeval=None, localtime=False, usegmt=True),
                'Content-Type': CONTENT_TYPE_AP,
                'User-Agent': self.user_agent
            }
            headers['Signature'] = http_signatures.sign_request(
                method='POST',
                path=path,
                headers=headers,
                body=body,
                private_key=key_pair.private_key,
                key_id=key_id
            )

            try:
                response = requests.post(inbox_url, data=body, headers=headers, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                logger.warning("Attempt %d/%d to %s failed: %s", attempt, self.max_attempts, inbox_url, e)
            except requests.RequestException as e:
                raise DeliveryRejected(inbox_url, str(e)) from e
            else:
                status_code = response.status_code
                if response.ok:
                    logger.info("✓ Delivered %s to %s", activity.get('type'), inbox_url)
                    return DeliveryResult(inbox_url, True, attempt, status_code)
                if not is_transient_status(status_code):
                    raise DeliveryRejected(inbox_url, f"HTTP {status_code}", status_code)
                logger.warning("Attempt %d/%d to %s got HTTP %d", attempt, self.max_attempts, inbox_url, status_code)

            if attempt < self.max_attempts:
                time.sleep(self.backoff_delay(attempt))

        logger.error("✗ Giving up on %s after %d attempts", inbox_url, self.max_attempts)
        return DeliveryResult(inbox_url, False, self.max_attempts, status_code)

    def _deliver_and_log(self, activity, inbox_url, key_pair, key_id) -> Optional[DeliveryResult]:
        try:
            return self.deliver(activity, inbox_url, key_pair, key_id)
        except DeliveryRejected as e:
            logger.error("✗ %s", e)
        except Exception:
            logger.exception("✗ Unexpected error delivering to %s", inbox_url)
        return None

    def dispatch(self, activity: dict, inbox_url: str, key_pair: KeyPair, key_id: str) -> Optional[Future]:
        """
        Fire-and-forget delivery

        Runs on the delivery thread pool, or inline when no workers are
        configured. Failures are logged, never raised.

        Returns:
            Future for the background delivery, or None when run inline
        """
        if self._executor is None:
            self._deliver_and_log(activity, inbox_url, key_pair, key_id)
            return None
        return self._executor.submit(self._deliver_and_log, activity, inbox_url, key_pair, key_id)

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
