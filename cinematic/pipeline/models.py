"""
Pydantic models and enums for the script-to-video pipeline.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Services ─────────────────────────────────────────────────────────────────

class Service(str, Enum):
    ATLASCLOUD = "atlascloud"   # text analysis
    SORA2API = "sora2api"       # video generation


KEY_FAILURE_THRESHOLD = 3
PROJECT_COST = 5


# ── Status Lifecycles ────────────────────────────────────────────────────────

class ProjectStatus(str, Enum):
    DRAFT = "draft"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


class SceneStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_SCENE_STATUSES = {SceneStatus.COMPLETED, SceneStatus.FAILED}


class SpeedType(str, Enum):
    FAST = "fast"       # 30–35 words
    MEDIUM = "medium"   # 20–25 words
    SLOW = "slow"       # 12–16 words


class LanguageDirection(str, Enum):
    LTR = "LTR"
    RTL = "RTL"


class AspectRatio(str, Enum):
    LANDSCAPE = "landscape"
    PORTRAIT = "portrait"


# ── Rows ─────────────────────────────────────────────────────────────────────

class Credential(BaseModel):
    id: str
    service: Service
    key_value: str = Field(..., repr=False)
    is_active: bool = True
    failure_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class Project(BaseModel):
    id: str
    user_id: str
    title: str
    script: str
    aspect_ratio: AspectRatio = AspectRatio.PORTRAIT
    character_image_url: Optional[str] = None
    primary_language: Optional[str] = None
    language_direction: Optional[LanguageDirection] = None
    total_scenes: Optional[int] = None
    total_duration: Optional[int] = None
    status: ProjectStatus = ProjectStatus.DRAFT
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Scene(BaseModel):
    id: str
    project_id: str
    scene_number: int
    scene_role: Optional[str] = None
    narration_text: str
    speed_type: SpeedType = SpeedType.MEDIUM
    word_count: Optional[int] = None
    visual_prompt: str
    task_id: Optional[str] = None
    video_url: Optional[str] = None
    status: SceneStatus = SceneStatus.PENDING
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CharacterProfile(BaseModel):
    id: Optional[str] = None
    project_id: str
    description: str = ""
    voice_language: Optional[str] = None
    accent: Optional[str] = None
    visual_features: dict = Field(default_factory=dict)


# ── Script Analysis (provider output, camelCase) ─────────────────────────────

class _Camel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AnalyzedCharacter(_Camel):
    description: str = ""
    voice_language: Optional[str] = Field(None, alias="voiceLanguage")
    accent: Optional[str] = None
    visual_features: dict = Field(default_factory=dict, alias="visualFeatures")


class AnalyzedScene(_Camel):
    scene_number: int = Field(..., alias="sceneNumber")
    role: Optional[str] = None
    narration_text: str = Field(..., alias="narrationText")
    speed_type: SpeedType = Field(SpeedType.MEDIUM, alias="speedType")
    word_count: Optional[int] = Field(None, alias="wordCount")
    visual_prompt: str = Field(..., alias="visualPrompt")


class AnalysisResult(_Camel):
    primary_language: Optional[str] = Field(None, alias="primaryLanguage")
    language_direction: LanguageDirection = Field(LanguageDirection.LTR, alias="languageDirection")
    total_scenes: Optional[int] = Field(None, alias="totalScenes")
    total_duration: Optional[int] = Field(None, alias="totalDuration")
    video_type: Optional[str] = Field(None, alias="videoType")
    pacing: Optional[SpeedType] = None
    character_profile: Optional[AnalyzedCharacter] = Field(None, alias="characterProfile")
    scenes: list[AnalyzedScene] = Field(default_factory=list)


class AnalysisOutcome(BaseModel):
    project: Project
    character_profile: Optional[CharacterProfile] = None
    scenes: list[Scene]
    analysis: AnalysisResult


# ── Video Jobs ───────────────────────────────────────────────────────────────

class TaskHandle(BaseModel):
    scene_id: str
    task_id: str


class PollOutcome(BaseModel):
    scene_id: str
    status: SceneStatus
    video_url: Optional[str] = None
    error: Optional[str] = None


# ── API Request Models ───────────────────────────────────────────────────────

class ProjectCreateRequest(BaseModel):
    """Pay-to-play: deduct PROJECT_COST credits and create a draft project."""
    title: str = Field(..., min_length=1)
    script: str = Field(..., min_length=1)
    aspect_ratio: AspectRatio = AspectRatio.PORTRAIT
    character_image_url: Optional[str] = None

    @field_validator("title", "script")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value
