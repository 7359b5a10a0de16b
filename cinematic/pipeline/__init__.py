"""
Script-to-Video Pipeline

Orchestration core:
  CredentialPool + FailoverExecutor — API key ranking, rotation and deactivation
  ScriptAnalyzer     — Stage 1: script → scene breakdown (AtlasCloud)
  VideoJobController — Stage 2: scene → rendered clip (Sora2API), single-shot polling
  CreditGate         — pay-to-play project creation
"""

from .analyzer import ScriptAnalyzer
from .credential_pool import CredentialPool
from .credit_gate import CreditGate
from .failover import FailoverExecutor
from .models import ProjectStatus, SceneStatus, Service
from .project_service import ProjectService
from .routes import project_router, scene_router
from .video_jobs import VideoJobController

__all__ = [
    "CredentialPool",
    "CreditGate",
    "FailoverExecutor",
    "ProjectService",
    "ProjectStatus",
    "SceneStatus",
    "ScriptAnalyzer",
    "Service",
    "VideoJobController",
    "project_router",
    "scene_router",
]
