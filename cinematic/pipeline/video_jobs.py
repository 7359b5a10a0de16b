"""
Stage 2: Scene Rendering — Sora2API with key rotation.

  start_generation(scene) — pending → generating, submit, store the task id
  poll_status(scene)      — single-shot check; finalizes on success

Finalize downloads the provider's transient result URL and re-uploads it
to our own storage before the scene is marked completed. A render that
succeeded upstream but could not be captured is a failed scene.

No timers live here: whoever calls poll_status owns the cadence.
"""

import time
import logging
from typing import Awaitable, Callable, Optional

from .. import metrics
from ..sora2api import (
    FLAG_CREATE_FAILED,
    FLAG_GENERATE_FAILED,
    FLAG_GENERATING,
    FLAG_SUCCESS,
    Sora2APIClient,
)
from ..errors import (
    CREDENTIAL_ERRORS,
    InvalidTransition,
    MediaRelocationFailed,
    NotFound,
    ProviderTaskFailed,
)
from .failover import FailoverExecutor
from .models import PollOutcome, Scene, SceneStatus, TaskHandle
from .prompts import build_generation_prompt
from .repository import Repository
from .storage import MediaStore, download_bytes, scene_video_key

logger = logging.getLogger(__name__)

VIDEO_QUALITY = "hd"
VIDEO_CONTENT_TYPE = "video/mp4"


def result_video_url(record: dict) -> Optional[str]:
    """Sora2API reports the video under response.imageUrl; some models use resultUrls."""
    response = record.get("response") or {}
    url = response.get("imageUrl")
    if not url:
        urls = response.get("resultUrls") or []
        url = urls[0] if urls else None
    return url or None


class VideoJobController:

    def __init__(
        self,
        repo: Repository,
        executor: FailoverExecutor,
        media_store: MediaStore,
        client: Optional[Sora2APIClient] = None,
        fetch_media: Callable[[str], Awaitable[bytes]] = download_bytes,
    ):
        self.repo = repo
        self.executor = executor
        self.media_store = media_store
        self.client = client or Sora2APIClient()
        self.fetch_media = fetch_media

    # ── Start ────────────────────────────────────────────────────────────

    async def start_generation(self, scene: Scene) -> TaskHandle:
        if scene.status != SceneStatus.PENDING:
            raise InvalidTransition(f"Scene {scene.id} is {scene.status.value}, expected pending")

        project = self.repo.get_project(scene.project_id)
        if project is None:
            raise NotFound(f"Project {scene.project_id} not found")
        profile = self.repo.get_character_profile(scene.project_id)

        # Optimistic: observers see work in progress before the network call
        if self.repo.update_scene(
            scene.id, expected_status=SceneStatus.PENDING, status=SceneStatus.GENERATING
        ) is None:
            raise InvalidTransition(f"Scene {scene.id} is no longer pending")
        logger.info(f"[scene {scene.id}] → generating (scene #{scene.scene_number})")

        prompt = build_generation_prompt(scene, project, profile)
        image_urls = [project.character_image_url] if project.character_image_url else None

        async def _submit(api_key: str) -> str:
            body = await self.client.generate_video(
                api_key,
                prompt=prompt,
                aspect_ratio=project.aspect_ratio.value,
                quality=VIDEO_QUALITY,
                image_urls=image_urls,
            )
            task_id = (body.get("data") or {}).get("taskId")
            if not task_id:
                raise ProviderTaskFailed(body.get("msg") or "Failed to create video task")
            return task_id

        try:
            task_id = await self.executor.run(_submit)
        except CREDENTIAL_ERRORS as e:
            # The only path that reverts a scene after it was set to generating
            self.repo.update_scene(scene.id, status=SceneStatus.FAILED, error_message=str(e))
            metrics.inc_counter("scenes.start_failed")
            metrics.record_error("start_generation", type(e).__name__, str(e), scene.id)
            logger.error(f"[scene {scene.id}] → failed: {e}")
            raise

        self.repo.update_scene(scene.id, task_id=task_id)
        metrics.inc_counter("scenes.started")
        logger.info(f"[scene {scene.id}] task created: {task_id}")
        return TaskHandle(scene_id=scene.id, task_id=task_id)

    # ── Poll ─────────────────────────────────────────────────────────────

    async def poll_status(self, scene: Scene) -> PollOutcome:
        if scene.status == SceneStatus.COMPLETED:
            return PollOutcome(scene_id=scene.id, status=SceneStatus.COMPLETED, video_url=scene.video_url)
        if scene.status == SceneStatus.FAILED:
            return PollOutcome(scene_id=scene.id, status=SceneStatus.FAILED, error=scene.error_message)
        if scene.status == SceneStatus.PENDING:
            raise InvalidTransition(f"Scene {scene.id} has not been started")
        if not scene.task_id:
            # Submission still in flight
            return PollOutcome(scene_id=scene.id, status=SceneStatus.GENERATING)

        task_id = scene.task_id
        record = await self.executor.run(
            lambda api_key: self.client.get_task_status(api_key, task_id)
        )
        flag = record.get("successFlag")
        logger.info(f"[scene {scene.id}] task {task_id} successFlag={flag}")

        if flag == FLAG_SUCCESS:
            return await self._finalize(scene, record)

        if flag in (FLAG_CREATE_FAILED, FLAG_GENERATE_FAILED):
            # Provider message is stored verbatim
            return self._fail(scene, record.get("errorMessage") or "Video generation failed")

        if flag != FLAG_GENERATING:
            logger.warning(f"[scene {scene.id}] unknown successFlag {flag!r}; treating as generating")
        return PollOutcome(scene_id=scene.id, status=SceneStatus.GENERATING)

    async def _finalize(self, scene: Scene, record: dict) -> PollOutcome:
        try:
            owned_url = await self._relocate(scene, result_video_url(record))
        except MediaRelocationFailed as e:
            return self._fail(scene, str(e))

        updated = self.repo.update_scene(
            scene.id,
            expected_status=SceneStatus.GENERATING,
            status=SceneStatus.COMPLETED,
            video_url=owned_url,
            error_message=None,
        )
        if updated is None:
            # Another poller finished first; report what is stored
            return self._stored_outcome(scene)

        metrics.inc_counter("scenes.completed")
        logger.info(f"[scene {scene.id}] → completed: {owned_url}")
        return PollOutcome(scene_id=scene.id, status=SceneStatus.COMPLETED, video_url=owned_url)

    async def _relocate(self, scene: Scene, source_url: Optional[str]) -> str:
        if not source_url:
            raise MediaRelocationFailed("No video URL in response")

        logger.info(f"[scene {scene.id}] downloading video from: {source_url}")
        try:
            data = await self.fetch_media(source_url)
            key = scene_video_key(scene.id, int(time.time() * 1000))
            return await self.media_store.upload(key, data, VIDEO_CONTENT_TYPE)
        except Exception as e:
            logger.error(f"[scene {scene.id}] relocation failed: {e}")
            raise MediaRelocationFailed(f"Upload failed: {e}") from e

    def _stored_outcome(self, scene: Scene) -> PollOutcome:
        current = self.repo.get_scene(scene.id) or scene
        return PollOutcome(
            scene_id=scene.id,
            status=current.status,
            video_url=current.video_url,
            error=current.error_message,
        )

    def _fail(self, scene: Scene, message: str) -> PollOutcome:
        updated = self.repo.update_scene(
            scene.id,
            expected_status=SceneStatus.GENERATING,
            status=SceneStatus.FAILED,
            error_message=message,
        )
        if updated is None:
            # Another poller settled the scene first; report what is stored
            return self._stored_outcome(scene)

        metrics.inc_counter("scenes.failed")
        metrics.record_error("poll_status", "scene_failed", message, scene.id)
        logger.error(f"[scene {scene.id}] → failed: {message}")
        return PollOutcome(scene_id=scene.id, status=SceneStatus.FAILED, error=message)
