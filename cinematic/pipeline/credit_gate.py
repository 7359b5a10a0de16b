"""
Pay-to-play gate for project creation.

The balance check, the debit and the project insert happen inside one
repository call (Postgres: create_project_with_debit, a conditional
`credits >= cost` update in the same transaction as the insert), so two
concurrent requests can never both spend the same balance.
"""

import logging

from .. import metrics
from ..errors import InsufficientCredits
from .models import PROJECT_COST, Project, ProjectCreateRequest, ProjectStatus
from .repository import Repository

logger = logging.getLogger(__name__)


class CreditGate:

    def __init__(self, repo: Repository, cost: int = PROJECT_COST):
        self.repo = repo
        self.cost = cost

    async def create_project(self, account_id: str, draft: ProjectCreateRequest) -> Project:
        fields = {
            "title": draft.title.strip(),
            "script": draft.script.strip(),
            "aspect_ratio": draft.aspect_ratio,
            "character_image_url": draft.character_image_url,
            "status": ProjectStatus.DRAFT,
        }

        project, balance = self.repo.create_project_with_debit(account_id, fields, self.cost)
        if project is None:
            metrics.inc_counter("projects.insufficient_credits")
            logger.info(f"Insufficient credits for user {account_id}: {balance}/{self.cost}")
            raise InsufficientCredits(self.cost, balance)

        metrics.inc_counter("projects.created")
        logger.info(f"[project {project.id}] created for user {account_id}; balance now {balance}")
        return project
