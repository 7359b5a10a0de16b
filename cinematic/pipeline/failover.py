"""
Run a provider call with automatic API key rotation.

Keys are tried one at a time, least-failed first, until one succeeds.
Quota-class failures (402/429, quota, rate limit, insufficient balance)
count against the key; any other failure moves on to the next key without
touching it.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .. import metrics
from ..errors import AllCredentialsExhausted, NoCredentialsAvailable, ProviderError
from .credential_pool import CredentialPool, short_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

QUOTA_STATUS_CODES = {402, 429}
QUOTA_MARKERS = ("quota", "rate limit", "insufficient", "402", "429")


def is_quota_error(error: BaseException) -> bool:
    """Structured status first; fall back to the message for unstructured bodies."""
    if isinstance(error, ProviderError) and error.status_code in QUOTA_STATUS_CODES:
        return True
    message = str(error).lower()
    return any(marker in message for marker in QUOTA_MARKERS)


class FailoverExecutor:

    def __init__(self, pool: CredentialPool):
        self.pool = pool

    @property
    def service(self) -> str:
        return self.pool.service.value

    async def run(self, operation: Callable[[str], Awaitable[T]]) -> T:
        keys = self.pool.list_usable()
        if not keys:
            metrics.inc_counter(f"failover.no_keys.{self.service}")
            raise NoCredentialsAvailable(self.service)

        last_error: Optional[BaseException] = None

        # Strictly sequential: at most one in-flight call per logical request
        for key in keys:
            metrics.inc_counter(f"failover.attempts.{self.service}")
            logger.info(f"Trying {self.service} key: {short_id(key.id)}")
            try:
                with metrics.timed(f"provider.{self.service}"):
                    result = await operation(key.key_value)
            except Exception as e:
                last_error = e
                logger.error(f"{self.service} key {short_id(key.id)} failed: {e}")

                if is_quota_error(e):
                    metrics.inc_counter(f"failover.quota_errors.{self.service}")
                    logger.info("Key exhausted, marking as failed and trying next key...")
                    self.pool.record_failure(key.id)
                else:
                    logger.info("Non-quota error, trying next key anyway...")
                continue

            self.pool.record_success(key.id)
            logger.info(f"{self.service} key {short_id(key.id)} succeeded")
            return result

        metrics.inc_counter(f"failover.exhausted.{self.service}")
        metrics.record_error("failover", type(last_error).__name__, str(last_error))
        raise AllCredentialsExhausted(self.service, last_error)
