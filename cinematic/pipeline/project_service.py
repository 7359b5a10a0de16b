"""
Project lifecycle service.

The programmatic surface the presentation layer calls:
  - Create (pay-to-play credit gate)
  - Analyze script (draft/failed → analyzing → analyzed | failed)
  - Start one or all scene renders
  - Check a scene's render status (plus project roll-up)
  - Retry a failed scene
  - Get / list projects and scenes

Ownership is checked here; the core components below trust their input.
"""

import os
import asyncio
import logging
from datetime import timedelta
from typing import Optional

from .. import metrics
from ..atlascloud import AtlasCloudClient
from ..errors import InvalidTransition, NotFound
from ..sora2api import Sora2APIClient
from .analyzer import ScriptAnalyzer
from .credential_pool import CredentialPool
from .credit_gate import CreditGate
from .failover import FailoverExecutor
from .memory_repository import InMemoryRepository
from .models import (
    AnalysisOutcome,
    PollOutcome,
    Project,
    ProjectCreateRequest,
    ProjectStatus,
    Scene,
    SceneStatus,
    Service,
    TaskHandle,
    TERMINAL_SCENE_STATUSES,
)
from .repository import Repository, SupabaseRepository, now_utc
from .storage import MediaStore, build_media_store, download_bytes
from .video_jobs import VideoJobController

logger = logging.getLogger(__name__)

STORE_BACKEND = os.getenv("STORE_BACKEND", "supabase")
STALE_SCENE_MESSAGE = "Timed out waiting for provider"


class ProjectService:

    def __init__(
        self,
        repo: Repository,
        media_store: Optional[MediaStore] = None,
        atlas_client: Optional[AtlasCloudClient] = None,
        sora_client: Optional[Sora2APIClient] = None,
        fetch_media=download_bytes,
    ):
        self.repo = repo
        self.credit_gate = CreditGate(repo)
        self.analyzer = ScriptAnalyzer(
            repo,
            FailoverExecutor(CredentialPool(repo, Service.ATLASCLOUD)),
            atlas_client,
        )
        self.video_jobs = VideoJobController(
            repo,
            FailoverExecutor(CredentialPool(repo, Service.SORA2API)),
            media_store or build_media_store(),
            sora_client,
            fetch_media,
        )

    # ── Lookup ───────────────────────────────────────────────────────────

    def _owned_project(self, project_id: str, user_id: str) -> Project:
        project = self.repo.get_project(project_id)
        if project is None:
            raise NotFound("Project not found.")
        if project.user_id != user_id:
            raise PermissionError("You don't own this project.")
        return project

    def _owned_scene(self, scene_id: str, user_id: str) -> tuple[Scene, Project]:
        scene = self.repo.get_scene(scene_id)
        if scene is None:
            raise NotFound("Scene not found.")
        return scene, self._owned_project(scene.project_id, user_id)

    def get_project(self, project_id: str, user_id: str) -> Project:
        return self._owned_project(project_id, user_id)

    def list_projects(self, user_id: str) -> list[Project]:
        return self.repo.list_projects(user_id)

    def list_scenes(self, project_id: str, user_id: str) -> list[Scene]:
        self._owned_project(project_id, user_id)
        return self.repo.list_scenes(project_id)

    # ── A. Create (Pay-to-Play) ──────────────────────────────────────────

    async def create_project(self, user_id: str, request: ProjectCreateRequest) -> Project:
        return await self.credit_gate.create_project(user_id, request)

    # ── B. Analyze ───────────────────────────────────────────────────────

    async def analyze_project(self, project_id: str, user_id: str) -> AnalysisOutcome:
        project = self._owned_project(project_id, user_id)

        eligible = project.status == ProjectStatus.DRAFT or (
            project.status == ProjectStatus.FAILED and not self.repo.list_scenes(project_id)
        )
        if not eligible:
            raise InvalidTransition(
                f"Analysis only allowed for draft projects or failed analyses. Current: {project.status.value}"
            )

        project = self.repo.update_project(
            project_id,
            expected_status=project.status,
            status=ProjectStatus.ANALYZING,
            error_message=None,
        )
        if project is None:
            raise InvalidTransition(f"Project {project_id} is already being analyzed")
        logger.info(f"[project {project_id}] → analyzing")

        try:
            return await self.analyzer.analyze(project)
        except Exception as e:
            logger.error(f"[project {project_id}] analysis failed: {e}")
            self.repo.update_project(project_id, status=ProjectStatus.FAILED, error_message=str(e))
            raise

    # ── C. Start Renders ─────────────────────────────────────────────────

    def _mark_generating(self, project: Project):
        if project.status == ProjectStatus.ANALYZED and self.repo.update_project(
            project.id, expected_status=ProjectStatus.ANALYZED, status=ProjectStatus.GENERATING
        ):
            logger.info(f"[project {project.id}] → generating")

    async def generate_scene(self, scene_id: str, user_id: str) -> TaskHandle:
        scene, project = self._owned_scene(scene_id, user_id)
        self._mark_generating(project)
        try:
            return await self.video_jobs.start_generation(scene)
        except Exception:
            self.roll_up(project.id)
            raise

    async def generate_all(self, project_id: str, user_id: str) -> list[dict]:
        """Start every pending scene concurrently. Per-scene errors are reported, not raised."""
        project = self._owned_project(project_id, user_id)
        pending = [s for s in self.repo.list_scenes(project_id) if s.status == SceneStatus.PENDING]
        if not pending:
            return []

        self._mark_generating(project)
        results = await asyncio.gather(
            *(self.video_jobs.start_generation(scene) for scene in pending),
            return_exceptions=True,
        )

        summary = []
        for scene, result in zip(pending, results):
            if isinstance(result, Exception):
                summary.append({"scene_id": scene.id, "task_id": None, "error": str(result)})
            else:
                summary.append({"scene_id": scene.id, "task_id": result.task_id, "error": None})

        self.roll_up(project_id)
        return summary

    # ── D. Check Status ──────────────────────────────────────────────────

    async def check_scene(self, scene_id: str, user_id: str) -> PollOutcome:
        scene, project = self._owned_scene(scene_id, user_id)
        outcome = await self.video_jobs.poll_status(scene)
        if outcome.status in TERMINAL_SCENE_STATUSES:
            self.roll_up(project.id)
        return outcome

    # ── E. Retry ─────────────────────────────────────────────────────────

    async def retry_scene(self, scene_id: str, user_id: str) -> TaskHandle:
        scene, project = self._owned_scene(scene_id, user_id)
        if scene.status != SceneStatus.FAILED:
            raise InvalidTransition(f"Only failed scenes can be retried. Current: {scene.status.value}")

        reset = self.repo.update_scene(
            scene.id,
            expected_status=SceneStatus.FAILED,
            status=SceneStatus.PENDING,
            task_id=None,
            video_url=None,
            error_message=None,
        )
        if reset is None:
            raise InvalidTransition(f"Scene {scene.id} is no longer failed")

        if project.status == ProjectStatus.FAILED:
            if self.repo.update_project(
                project.id,
                expected_status=ProjectStatus.FAILED,
                status=ProjectStatus.GENERATING,
                error_message=None,
            ):
                logger.info(f"[project {project.id}] → generating (retry)")

        metrics.inc_counter("scenes.retried")
        return await self.generate_scene(scene.id, user_id)

    # ── F. Project Roll-up ───────────────────────────────────────────────

    def roll_up(self, project_id: str) -> Optional[Project]:
        """Derive the project's terminal status once every scene is terminal."""
        project = self.repo.get_project(project_id)
        if project is None or project.status != ProjectStatus.GENERATING:
            return project

        scenes = self.repo.list_scenes(project_id)
        if not scenes or any(s.status not in TERMINAL_SCENE_STATUSES for s in scenes):
            return project

        failed = [s for s in scenes if s.status == SceneStatus.FAILED]
        if failed:
            project = self.repo.update_project(
                project_id,
                status=ProjectStatus.FAILED,
                error_message=f"{len(failed)} of {len(scenes)} scenes failed",
            )
        else:
            project = self.repo.update_project(project_id, status=ProjectStatus.COMPLETED)
            metrics.inc_counter("projects.completed")
        logger.info(f"[project {project_id}] → {project.status.value}")
        return project

    # ── G. Poll Sweep (used by the background poller) ────────────────────

    async def poll_generating(self, stale_after_seconds: float = 0) -> list[PollOutcome]:
        scenes = self.repo.list_generating_scenes()
        metrics.set_gauge("scenes.generating", len(scenes))

        live = []
        outcomes = []
        cutoff = now_utc() - timedelta(seconds=stale_after_seconds) if stale_after_seconds > 0 else None
        for scene in scenes:
            if cutoff and scene.updated_at and scene.updated_at < cutoff:
                updated = self.repo.update_scene(
                    scene.id,
                    expected_status=SceneStatus.GENERATING,
                    status=SceneStatus.FAILED,
                    error_message=STALE_SCENE_MESSAGE,
                )
                if updated is not None:
                    metrics.inc_counter("scenes.timed_out")
                    logger.warning(f"[scene {scene.id}] → failed: {STALE_SCENE_MESSAGE}")
                    outcomes.append(PollOutcome(
                        scene_id=scene.id, status=SceneStatus.FAILED, error=STALE_SCENE_MESSAGE
                    ))
            else:
                live.append(scene)

        results = await asyncio.gather(
            *(self.video_jobs.poll_status(scene) for scene in live),
            return_exceptions=True,
        )
        for scene, result in zip(live, results):
            if isinstance(result, Exception):
                logger.error(f"[scene {scene.id}] status check failed: {result}")
                metrics.record_error("poller", type(result).__name__, str(result), scene.id)
            else:
                outcomes.append(result)

        for project_id in {s.project_id for s in scenes}:
            self.roll_up(project_id)
        return outcomes


# ── Service Singleton ────────────────────────────────────────────────────────

_service: Optional[ProjectService] = None


def build_repository(backend: Optional[str] = None) -> Repository:
    backend = (backend or STORE_BACKEND).lower()
    if backend == "memory":
        logger.warning("STORE_BACKEND=memory: state is not persisted")
        return InMemoryRepository()
    if backend == "supabase":
        return SupabaseRepository()
    raise ValueError(f"Unknown STORE_BACKEND: {backend}")


def get_service() -> ProjectService:
    """Lazy-init the process-wide service."""
    global _service
    if _service is None:
        _service = ProjectService(build_repository())
    return _service


def set_service(service: Optional[ProjectService]):
    """Swap the process-wide service (tests, custom wiring)."""
    global _service
    _service = service
