"""
API key pool for one provider.

Keys are stored in the `api_keys` table and ranked least-failed first.
Outcomes recorded here are the only thing that mutates a key:
  - success → failure_count = 0, last_used_at = now
  - quota-class failure → failure_count + 1, deactivated at KEY_FAILURE_THRESHOLD
"""

import logging

from .. import metrics
from .models import Credential, KEY_FAILURE_THRESHOLD, Service
from .repository import Repository

logger = logging.getLogger(__name__)


def short_id(credential_id: str) -> str:
    return f"{credential_id[:8]}..."


class CredentialPool:

    def __init__(self, repo: Repository, service: Service, threshold: int = KEY_FAILURE_THRESHOLD):
        self.repo = repo
        self.service = service
        self.threshold = threshold

    def list_usable(self) -> list[Credential]:
        """Active keys for this service, least-failed first. Never raises."""
        try:
            keys = self.repo.list_active_credentials(self.service)
        except Exception as e:
            logger.error(f"Error fetching {self.service.value} API keys: {e}")
            return []
        return sorted((k for k in keys if k.is_active), key=lambda k: k.failure_count)

    def record_success(self, credential_id: str):
        if not self.repo.mark_credential_success(credential_id):
            logger.warning(f"record_success on unknown {self.service.value} key {short_id(credential_id)}")

    def record_failure(self, credential_id: str):
        updated = self.repo.increment_credential_failure(credential_id, self.threshold)
        if updated is None:
            logger.warning(f"record_failure on unknown {self.service.value} key {short_id(credential_id)}")
            return None

        if not updated.is_active and updated.failure_count == self.threshold:
            metrics.inc_counter(f"keys.deactivated.{self.service.value}")
            logger.warning(
                f"Deactivating {self.service.value} key {short_id(credential_id)} "
                f"after {updated.failure_count} failures"
            )
        return updated
