"""Tests for the project lifecycle: ownership, analysis, renders, roll-up, retry."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from cinematic.errors import (
    AllCredentialsExhausted,
    AnalysisParseError,
    InsufficientCredits,
    InvalidTransition,
    NoCredentialsAvailable,
    NotFound,
    ProviderError,
)
from cinematic.pipeline.memory_repository import InMemoryRepository
from cinematic.pipeline.models import ProjectCreateRequest, ProjectStatus, SceneStatus, Service
from cinematic.pipeline.poller import StatusPoller
from cinematic.pipeline.project_service import STALE_SCENE_MESSAGE, build_repository
from cinematic.pipeline.repository import now_utc

from conftest import SAMPLE_ANALYSIS, USER_ID, analysis_completion, completion, task_created


def seed_keys(repo):
    repo.add_credential(Service.ATLASCLOUD, "sk-atlas")
    repo.add_credential(Service.SORA2API, "sk-sora")


async def analyzed_project(service, repo):
    """Create and analyze a project; leaves two pending scenes."""
    seed_keys(repo)
    repo.set_balance(USER_ID, 10)
    project = await service.create_project(USER_ID, ProjectCreateRequest(title="Ad", script="Buy now."))
    await service.analyze_project(project.id, USER_ID)
    return repo.get_project(project.id)


# ── Ownership + lookup ───────────────────────────────────────────────────────

def test_get_project_checks_owner(service, repo):
    project = repo.add_project(user_id=USER_ID, title="t", script="s")

    assert service.get_project(project.id, USER_ID).id == project.id
    with pytest.raises(PermissionError):
        service.get_project(project.id, "someone-else")
    with pytest.raises(NotFound):
        service.get_project("missing", USER_ID)


def test_list_projects_newest_first(service, repo):
    first = repo.add_project(user_id=USER_ID, title="one", script="s")
    second = repo.add_project(user_id=USER_ID, title="two", script="s")
    repo.add_project(user_id="other", title="three", script="s")

    assert [p.id for p in service.list_projects(USER_ID)] == [second.id, first.id]


def test_list_scenes_in_scene_order(service, repo):
    project = repo.add_project(user_id=USER_ID, title="t", script="s")
    repo.add_scene(project_id=project.id, scene_number=2, narration_text="b", visual_prompt="b")
    repo.add_scene(project_id=project.id, scene_number=1, narration_text="a", visual_prompt="a")

    assert [s.scene_number for s in service.list_scenes(project.id, USER_ID)] == [1, 2]


@pytest.mark.asyncio
async def test_scene_actions_check_owner(service, repo):
    project = repo.add_project(user_id=USER_ID, title="t", script="s")
    scene = repo.add_scene(project_id=project.id, scene_number=1, narration_text="a", visual_prompt="a")

    with pytest.raises(PermissionError):
        await service.generate_scene(scene.id, "intruder")
    with pytest.raises(NotFound):
        await service.check_scene("missing-scene", USER_ID)


# ── Create + analyze ─────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_goes_through_credit_gate(service, repo):
    with pytest.raises(InsufficientCredits):
        await service.create_project(USER_ID, ProjectCreateRequest(title="t", script="s"))


@pytest.mark.asyncio
async def test_analyze_moves_draft_to_analyzed(service, repo):
    project = await analyzed_project(service, repo)

    assert project.status == ProjectStatus.ANALYZED
    assert len(repo.list_scenes(project.id)) == 2


@pytest.mark.asyncio
async def test_analyze_shows_analyzing_while_in_flight(service, repo, atlas):
    seed_keys(repo)
    project = repo.add_project(user_id=USER_ID, title="t", script="s")
    seen = []
    response = atlas.chat_completion.return_value

    async def observe(api_key, prompt):
        seen.append(repo.get_project(project.id).status)
        return response

    atlas.chat_completion.side_effect = observe

    await service.analyze_project(project.id, USER_ID)

    assert seen == [ProjectStatus.ANALYZING]


@pytest.mark.asyncio
async def test_analyze_failure_marks_project_failed(service, repo, atlas):
    seed_keys(repo)
    project = repo.add_project(user_id=USER_ID, title="t", script="s")
    atlas.chat_completion.return_value = completion("not json at all")

    with pytest.raises(AnalysisParseError):
        await service.analyze_project(project.id, USER_ID)

    stored = repo.get_project(project.id)
    assert stored.status == ProjectStatus.FAILED
    assert stored.error_message == "Failed to parse AI analysis response"


@pytest.mark.asyncio
async def test_failed_analysis_can_be_rerun(service, repo, atlas):
    seed_keys(repo)
    project = repo.add_project(user_id=USER_ID, title="t", script="s", status=ProjectStatus.FAILED)

    await service.analyze_project(project.id, USER_ID)

    stored = repo.get_project(project.id)
    assert stored.status == ProjectStatus.ANALYZED
    assert stored.error_message is None


@pytest.mark.asyncio
async def test_analyze_rejected_once_scenes_exist(service, repo):
    project = await analyzed_project(service, repo)

    with pytest.raises(InvalidTransition):
        await service.analyze_project(project.id, USER_ID)


@pytest.mark.asyncio
async def test_analyze_loses_race_against_another_analysis(service, repo, atlas, monkeypatch):
    seed_keys(repo)
    snapshot = repo.add_project(user_id=USER_ID, title="t", script="s")
    # Another request moved the project on after this one read it
    repo.update_project(snapshot.id, status=ProjectStatus.ANALYZING)
    monkeypatch.setattr(service, "_owned_project", lambda project_id, user_id: snapshot)

    with pytest.raises(InvalidTransition):
        await service.analyze_project(snapshot.id, USER_ID)

    atlas.chat_completion.assert_not_called()
    assert repo.get_project(snapshot.id).status == ProjectStatus.ANALYZING
    assert repo.list_scenes(snapshot.id) == []


def test_conditional_project_update(repo):
    project = repo.add_project(user_id=USER_ID, title="t", script="s")

    assert repo.update_project(
        project.id, expected_status=ProjectStatus.FAILED, status=ProjectStatus.ANALYZING
    ) is None
    assert repo.get_project(project.id).status == ProjectStatus.DRAFT

    updated = repo.update_project(
        project.id, expected_status=ProjectStatus.DRAFT, status=ProjectStatus.ANALYZING
    )
    assert updated.status == ProjectStatus.ANALYZING
    with pytest.raises(NotFound):
        repo.update_project("missing", expected_status=ProjectStatus.DRAFT, status=ProjectStatus.FAILED)


@pytest.mark.asyncio
async def test_analyze_without_keys_marks_failed(service, repo):
    project = repo.add_project(user_id=USER_ID, title="t", script="s")

    with pytest.raises(NoCredentialsAvailable):
        await service.analyze_project(project.id, USER_ID)

    assert repo.get_project(project.id).error_message == "No active atlascloud API keys available"


# ── Renders ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_generate_all_starts_every_pending_scene(service, repo, sora):
    project = await analyzed_project(service, repo)
    sora.generate_video.side_effect = [task_created("task-a"), task_created("task-b")]

    results = await service.generate_all(project.id, USER_ID)

    assert sorted(r["task_id"] for r in results) == ["task-a", "task-b"]
    assert all(r["error"] is None for r in results)
    assert repo.get_project(project.id).status == ProjectStatus.GENERATING
    assert all(s.status == SceneStatus.GENERATING for s in repo.list_scenes(project.id))


@pytest.mark.asyncio
async def test_generate_all_reports_per_scene_errors(service, repo, sora):
    project = await analyzed_project(service, repo)
    sora.generate_video.side_effect = [
        task_created("task-a"),
        ProviderError("Rate limit exceeded", status_code=429),
    ]

    results = await service.generate_all(project.id, USER_ID)

    errors = [r for r in results if r["error"]]
    assert len(errors) == 1
    assert errors[0]["error"].startswith("All sora2api API keys failed")
    statuses = sorted(s.status.value for s in repo.list_scenes(project.id))
    assert statuses == ["failed", "generating"]
    assert repo.get_project(project.id).status == ProjectStatus.GENERATING


@pytest.mark.asyncio
async def test_generate_all_with_nothing_pending(service, repo):
    project = repo.add_project(user_id=USER_ID, title="t", script="s", status=ProjectStatus.ANALYZED)

    assert await service.generate_all(project.id, USER_ID) == []
    assert repo.get_project(project.id).status == ProjectStatus.ANALYZED


@pytest.mark.asyncio
async def test_single_scene_exhaustion_rolls_project_up(service, repo, sora):
    seed_keys(repo)
    project = repo.add_project(user_id=USER_ID, title="t", script="s", status=ProjectStatus.ANALYZED)
    scene = repo.add_scene(project_id=project.id, scene_number=1, narration_text="a", visual_prompt="a")
    sora.generate_video.side_effect = ProviderError("Insufficient balance", status_code=402)

    with pytest.raises(AllCredentialsExhausted):
        await service.generate_scene(scene.id, USER_ID)

    stored = repo.get_project(project.id)
    assert stored.status == ProjectStatus.FAILED
    assert stored.error_message == "1 of 1 scenes failed"


# ── Roll-up ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_project_completes_when_every_scene_completes(service, repo, sora):
    project = await analyzed_project(service, repo)
    await service.generate_all(project.id, USER_ID)
    sora.get_task_status.return_value = {"successFlag": 1, "response": {"imageUrl": "https://cdn/v.mp4"}}

    scenes = repo.list_scenes(project.id)
    await service.check_scene(scenes[0].id, USER_ID)
    assert repo.get_project(project.id).status == ProjectStatus.GENERATING

    await service.check_scene(scenes[1].id, USER_ID)
    assert repo.get_project(project.id).status == ProjectStatus.COMPLETED


@pytest.mark.asyncio
async def test_project_fails_when_any_scene_fails(service, repo, sora):
    project = await analyzed_project(service, repo)
    await service.generate_all(project.id, USER_ID)
    first, second = repo.list_scenes(project.id)

    sora.get_task_status.return_value = {"successFlag": 1, "response": {"imageUrl": "https://cdn/v.mp4"}}
    await service.check_scene(first.id, USER_ID)
    sora.get_task_status.return_value = {"successFlag": 3, "errorMessage": "Content policy violation"}
    outcome = await service.check_scene(second.id, USER_ID)

    assert outcome.error == "Content policy violation"
    stored = repo.get_project(project.id)
    assert stored.status == ProjectStatus.FAILED
    assert stored.error_message == "1 of 2 scenes failed"


@pytest.mark.asyncio
async def test_stale_snapshot_does_not_reopen_finished_project(service, repo, sora, monkeypatch):
    project = await analyzed_project(service, repo)
    scene = repo.list_scenes(project.id)[0]
    sora.generate_video.return_value = task_created("task-1")
    repo.update_project(project.id, status=ProjectStatus.COMPLETED)
    monkeypatch.setattr(service, "_owned_scene", lambda scene_id, user_id: (scene, project))

    await service.generate_scene(scene.id, USER_ID)

    assert repo.get_project(project.id).status == ProjectStatus.COMPLETED


def test_roll_up_ignores_projects_not_generating(service, repo):
    project = repo.add_project(user_id=USER_ID, title="t", script="s", status=ProjectStatus.ANALYZED)
    repo.add_scene(
        project_id=project.id, scene_number=1, narration_text="a", visual_prompt="a",
        status=SceneStatus.COMPLETED,
    )

    assert service.roll_up(project.id).status == ProjectStatus.ANALYZED


# ── Retry ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_retry_failed_scene(service, repo, sora):
    seed_keys(repo)
    project = repo.add_project(user_id=USER_ID, title="t", script="s", status=ProjectStatus.FAILED)
    scene = repo.add_scene(
        project_id=project.id, scene_number=1, narration_text="a", visual_prompt="a",
        status=SceneStatus.FAILED, task_id="old-task", error_message="Content policy violation",
    )
    sora.generate_video.return_value = task_created("new-task")

    handle = await service.retry_scene(scene.id, USER_ID)

    assert handle.task_id == "new-task"
    stored = repo.get_scene(scene.id)
    assert stored.status == SceneStatus.GENERATING
    assert stored.task_id == "new-task"
    assert stored.error_message is None
    assert repo.get_project(project.id).status == ProjectStatus.GENERATING


@pytest.mark.asyncio
async def test_retry_requires_failed_scene(service, repo):
    project = repo.add_project(user_id=USER_ID, title="t", script="s")
    scene = repo.add_scene(project_id=project.id, scene_number=1, narration_text="a", visual_prompt="a")

    with pytest.raises(InvalidTransition):
        await service.retry_scene(scene.id, USER_ID)


# ── Poll sweep ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_poll_generating_checks_only_started_scenes(service, repo, sora):
    seed_keys(repo)
    project = repo.add_project(user_id=USER_ID, title="t", script="s", status=ProjectStatus.GENERATING)
    repo.add_scene(
        project_id=project.id, scene_number=1, narration_text="a", visual_prompt="a",
        status=SceneStatus.GENERATING, task_id="task-1",
    )
    repo.add_scene(
        project_id=project.id, scene_number=2, narration_text="b", visual_prompt="b",
        status=SceneStatus.GENERATING,
    )
    repo.add_scene(project_id=project.id, scene_number=3, narration_text="c", visual_prompt="c")

    outcomes = await service.poll_generating()

    assert len(outcomes) == 1
    assert sora.get_task_status.await_count == 1


@pytest.mark.asyncio
async def test_poll_generating_times_out_stale_scenes(service, repo, sora):
    seed_keys(repo)
    project = repo.add_project(user_id=USER_ID, title="t", script="s", status=ProjectStatus.GENERATING)
    scene = repo.add_scene(
        project_id=project.id, scene_number=1, narration_text="a", visual_prompt="a",
        status=SceneStatus.GENERATING, task_id="task-1",
        updated_at=now_utc() - timedelta(hours=2),
    )

    outcomes = await service.poll_generating(stale_after_seconds=600)

    assert outcomes[0].error == STALE_SCENE_MESSAGE
    assert repo.get_scene(scene.id).status == SceneStatus.FAILED
    assert repo.get_project(project.id).status == ProjectStatus.FAILED
    sora.get_task_status.assert_not_called()


@pytest.mark.asyncio
async def test_poll_generating_without_timeout_waits(service, repo, sora):
    seed_keys(repo)
    project = repo.add_project(user_id=USER_ID, title="t", script="s", status=ProjectStatus.GENERATING)
    scene = repo.add_scene(
        project_id=project.id, scene_number=1, narration_text="a", visual_prompt="a",
        status=SceneStatus.GENERATING, task_id="task-1",
        updated_at=now_utc() - timedelta(days=3),
    )

    await service.poll_generating()

    assert repo.get_scene(scene.id).status == SceneStatus.GENERATING


@pytest.mark.asyncio
async def test_poll_generating_logs_and_continues_on_errors(service, repo, sora):
    project = repo.add_project(user_id=USER_ID, title="t", script="s", status=ProjectStatus.GENERATING)
    repo.add_scene(
        project_id=project.id, scene_number=1, narration_text="a", visual_prompt="a",
        status=SceneStatus.GENERATING, task_id="task-1",
    )

    # No sora keys: every poll raises NoCredentialsAvailable
    assert await service.poll_generating() == []


def test_poller_sweep_once_uses_service(service, repo, sora):
    seed_keys(repo)
    project = repo.add_project(user_id=USER_ID, title="t", script="s", status=ProjectStatus.GENERATING)
    scene = repo.add_scene(
        project_id=project.id, scene_number=1, narration_text="a", visual_prompt="a",
        status=SceneStatus.GENERATING, task_id="task-1",
    )
    sora.get_task_status.return_value = {"successFlag": 1, "response": {"imageUrl": "https://cdn/v.mp4"}}

    checked = StatusPoller(lambda: service, interval=0.01).sweep_once()

    assert checked == 1
    assert repo.get_scene(scene.id).status == SceneStatus.COMPLETED
    assert repo.get_project(project.id).status == ProjectStatus.COMPLETED


def test_poller_loop_survives_errors():
    factory = MagicMock(side_effect=RuntimeError("database unavailable"))
    poller = StatusPoller(factory, interval=0.01)

    poller.start()
    poller.stop(timeout=2)

    assert factory.call_count >= 1
    assert not poller._thread.is_alive()


def test_build_repository_backends():
    assert isinstance(build_repository("memory"), InMemoryRepository)
    with pytest.raises(ValueError):
        build_repository("sqlite")


# ── End to end ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_script_to_finished_video(service, repo, atlas, sora, fetch_media, media_store):
    seed_keys(repo)
    repo.add_credential(Service.SORA2API, "sk-sora-backup")
    repo.set_balance(USER_ID, 7)

    project = await service.create_project(
        USER_ID,
        ProjectCreateRequest(title="Shop ad", script="مرحبا بكم في متجرنا. زورونا اليوم", aspect_ratio="portrait"),
    )
    assert repo.get_balance(USER_ID) == 2

    outcome = await service.analyze_project(project.id, USER_ID)
    assert [s.scene_number for s in outcome.scenes] == [1, 2]

    sora.generate_video.side_effect = [
        ProviderError("Rate limit exceeded", status_code=429),
        task_created("task-a"),
        task_created("task-b"),
    ]
    results = await service.generate_all(project.id, USER_ID)
    assert all(r["error"] is None for r in results)

    sora.get_task_status.return_value = {"successFlag": 0}
    for scene in repo.list_scenes(project.id):
        assert (await service.check_scene(scene.id, USER_ID)).status == SceneStatus.GENERATING

    sora.get_task_status.return_value = {"successFlag": 1, "response": {"imageUrl": "https://cdn/v.mp4"}}
    for scene in repo.list_scenes(project.id):
        assert (await service.check_scene(scene.id, USER_ID)).status == SceneStatus.COMPLETED

    assert repo.get_project(project.id).status == ProjectStatus.COMPLETED
    assert len(media_store.uploads) == 2
    assert all(s.video_url.startswith("https://media.example.com/") for s in repo.list_scenes(project.id))
    failures = {c.key_value: c.failure_count for c in repo.credentials.values()}
    assert failures == {"sk-atlas": 0, "sk-sora": 1, "sk-sora-backup": 0}


@pytest.mark.asyncio
async def test_three_scene_walkthrough(service, repo, atlas, sora):
    seed_keys(repo)
    repo.set_balance(USER_ID, 5)
    payload = dict(SAMPLE_ANALYSIS, totalScenes=3, totalDuration=30)
    payload["scenes"] = [
        dict(SAMPLE_ANALYSIS["scenes"][0], sceneNumber=n, narrationText=f"Line {n}") for n in (1, 2, 3)
    ]
    atlas.chat_completion.return_value = analysis_completion(payload)

    project = await service.create_project(USER_ID, ProjectCreateRequest(title="Ad", script="Line 1 Line 2 Line 3"))
    assert repo.get_balance(USER_ID) == 0

    await service.analyze_project(project.id, USER_ID)
    assert repo.get_project(project.id).status == ProjectStatus.ANALYZED
    scenes = repo.list_scenes(project.id)
    assert [s.scene_number for s in scenes] == [1, 2, 3]
    assert all(s.status == SceneStatus.PENDING for s in scenes)

    handle = await service.generate_scene(scenes[0].id, USER_ID)
    assert handle.task_id == "task-1"
    assert repo.get_scene(scenes[0].id).status == SceneStatus.GENERATING

    sora.get_task_status.return_value = {"taskId": "task-1", "successFlag": 0}
    await service.check_scene(scenes[0].id, USER_ID)
    assert repo.get_scene(scenes[0].id).status == SceneStatus.GENERATING

    provider_url = "https://tempfile.sora2api.ai/render/abc.mp4"
    sora.get_task_status.return_value = {"taskId": "task-1", "successFlag": 1, "response": {"imageUrl": provider_url}}
    outcome = await service.check_scene(scenes[0].id, USER_ID)

    stored = repo.get_scene(scenes[0].id)
    assert stored.status == SceneStatus.COMPLETED
    assert stored.video_url == outcome.video_url
    assert stored.video_url != provider_url
    assert stored.video_url.startswith("https://media.example.com/videos/")
    # Two scenes remain pending, so the project is still rendering
    assert repo.get_project(project.id).status == ProjectStatus.GENERATING
