import json
from unittest.mock import AsyncMock

import pytest

from cinematic import metrics
from cinematic.pipeline.credential_pool import CredentialPool
from cinematic.pipeline.failover import FailoverExecutor
from cinematic.pipeline.memory_repository import InMemoryRepository
from cinematic.pipeline.models import Service
from cinematic.pipeline.project_service import ProjectService
from cinematic.pipeline.storage import MediaStore


USER_ID = "user-1"

SAMPLE_ANALYSIS = {
    "primaryLanguage": "Arabic",
    "languageDirection": "RTL",
    "totalScenes": 2,
    "totalDuration": 20,
    "videoType": "ad",
    "pacing": "medium",
    "characterProfile": {
        "description": "A friendly shop owner in his forties",
        "voiceLanguage": "Arabic",
        "accent": "Egyptian Arabic",
        "visualFeatures": {"age": "45", "clothing": "white shirt"},
    },
    "scenes": [
        {
            "sceneNumber": 1,
            "role": "Hook",
            "narrationText": "مرحبا بكم في متجرنا",
            "speedType": "medium",
            "wordCount": 4,
            "visualPrompt": "A man waves at the camera inside a bright shop",
        },
        {
            "sceneNumber": 2,
            "role": "CTA",
            "narrationText": "زورونا اليوم",
            "speedType": "slow",
            "wordCount": 2,
            "visualPrompt": "Close-up of the man smiling, pointing at the door",
        },
    ],
}


def completion(content):
    """Wrap text the way an OpenAI-compatible chat completion does."""
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def analysis_completion(payload=None, fenced=True):
    body = json.dumps(payload or SAMPLE_ANALYSIS, ensure_ascii=False)
    return completion(f"```json\n{body}\n```" if fenced else body)


def task_created(task_id="task-1"):
    return {"code": 200, "msg": "success", "data": {"taskId": task_id}}


class FakeMediaStore(MediaStore):
    """Records uploads and hands back a stable owned URL."""

    def __init__(self):
        self.uploads = []

    async def upload(self, key, data, content_type):
        self.uploads.append((key, data, content_type))
        return f"https://media.example.com/videos/{key}"


@pytest.fixture(autouse=True)
def worker_env(monkeypatch):
    """Open auth in development mode and start every test with clean metrics."""
    monkeypatch.delenv("WORKER_SHARED_SECRET", raising=False)
    monkeypatch.setenv("ENVIRONMENT", "development")
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def media_store():
    return FakeMediaStore()


@pytest.fixture
def atlas():
    client = AsyncMock()
    client.chat_completion.return_value = analysis_completion()
    return client


@pytest.fixture
def sora():
    client = AsyncMock()
    client.generate_video.return_value = task_created()
    client.get_task_status.return_value = {"taskId": "task-1", "successFlag": 0}
    return client


@pytest.fixture
def fetch_media():
    return AsyncMock(return_value=b"mp4-bytes")


@pytest.fixture
def service(repo, media_store, atlas, sora, fetch_media):
    return ProjectService(
        repo,
        media_store=media_store,
        atlas_client=atlas,
        sora_client=sora,
        fetch_media=fetch_media,
    )


@pytest.fixture
def atlas_executor(repo):
    return FailoverExecutor(CredentialPool(repo, Service.ATLASCLOUD))


@pytest.fixture
def sora_executor(repo):
    return FailoverExecutor(CredentialPool(repo, Service.SORA2API))
