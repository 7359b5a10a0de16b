"""
Stage 1: Script Analysis — AtlasCloud chat completion with key rotation.

Turns a project's script into a scene breakdown and persists it in one
atomic unit: project language/totals + status=analyzed, the optional
character profile, and every scene as `pending`.

Parse and validation failures never touch the project. A persistence
failure after a successful provider call is reported, not retried.
"""

import re
import json
import logging
from typing import Optional

from pydantic import ValidationError

from .. import metrics
from ..atlascloud import AtlasCloudClient, message_content
from ..errors import AnalysisParseError, InvalidAnalysis, PersistenceError
from .failover import FailoverExecutor
from .models import (
    AnalysisOutcome,
    AnalysisResult,
    Project,
    ProjectStatus,
    SceneStatus,
)
from .prompts import SCENE_SECONDS, build_analysis_prompt
from .repository import Repository

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```json\s*([\s\S]*?)\s*```")
_FENCED_ANY = re.compile(r"```\s*([\s\S]*?)\s*```")


def extract_json_text(content: str) -> str:
    """Fenced ```json block first, then any fenced block, else the whole body."""
    match = _FENCED_JSON.search(content) or _FENCED_ANY.search(content)
    return match.group(1) if match else content


def parse_analysis(content: str) -> AnalysisResult:
    try:
        payload = json.loads(extract_json_text(content).strip())
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse AI response: {e}; snippet: {content[:200]!r}")
        raise AnalysisParseError("Failed to parse AI analysis response") from e

    if not isinstance(payload, dict):
        raise AnalysisParseError("AI analysis response is not a JSON object")

    scenes = payload.get("scenes")
    if not isinstance(scenes, list) or not scenes:
        raise InvalidAnalysis("AI did not return valid scenes")

    try:
        return AnalysisResult.model_validate(payload)
    except ValidationError as e:
        raise AnalysisParseError(f"AI analysis response has an unexpected shape: {e}") from e


class ScriptAnalyzer:

    def __init__(
        self,
        repo: Repository,
        executor: FailoverExecutor,
        client: Optional[AtlasCloudClient] = None,
    ):
        self.repo = repo
        self.executor = executor
        self.client = client or AtlasCloudClient()

    async def analyze(self, project: Project) -> AnalysisOutcome:
        logger.info(f"[project {project.id}] analyzing script ({len(project.script)} chars)")
        prompt = build_analysis_prompt(project.script, bool(project.character_image_url))

        data = await self.executor.run(
            lambda api_key: self.client.chat_completion(api_key, prompt)
        )

        content = message_content(data)
        if content is None:
            logger.error(f"[project {project.id}] invalid AtlasCloud response: {str(data)[:300]}")
            raise AnalysisParseError("No content received from AI")

        analysis = parse_analysis(content)
        logger.info(f"[project {project.id}] parsed analysis: {len(analysis.scenes)} scenes")

        project_fields = {
            "primary_language": analysis.primary_language,
            "language_direction": analysis.language_direction,
            "total_scenes": analysis.total_scenes or len(analysis.scenes),
            "total_duration": analysis.total_duration or len(analysis.scenes) * SCENE_SECONDS,
            "status": ProjectStatus.ANALYZED,
            "error_message": None,
        }

        profile = None
        if analysis.character_profile:
            profile = {
                "description": analysis.character_profile.description,
                "voice_language": analysis.character_profile.voice_language,
                "accent": analysis.character_profile.accent,
                "visual_features": analysis.character_profile.visual_features,
            }

        # Scene numbers are taken verbatim from the analysis
        scene_rows = [
            {
                "scene_number": s.scene_number,
                "scene_role": s.role,
                "narration_text": s.narration_text,
                "speed_type": s.speed_type,
                "word_count": s.word_count,
                "visual_prompt": s.visual_prompt,
                "status": SceneStatus.PENDING,
            }
            for s in analysis.scenes
        ]

        try:
            saved_project, saved_profile, scenes = self.repo.apply_script_analysis(
                project.id, project_fields, profile, scene_rows
            )
        except Exception as e:
            metrics.record_error("analyze", "persistence", str(e), project.id)
            logger.error(f"[project {project.id}] failed to save analysis: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save analysis: {e}") from e

        metrics.inc_counter("projects.analyzed")
        logger.info(f"[project {project.id}] → analyzed ({len(scenes)} scenes)")
        return AnalysisOutcome(
            project=saved_project,
            character_profile=saved_profile,
            scenes=scenes,
            analysis=analysis,
        )
