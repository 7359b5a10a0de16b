"""
Persistence collaborator for the orchestration core.

Every multi-row or read-modify-write unit is a single Postgres function
(see supabase/migrations) so concurrent workers stay consistent:
  - create_project_with_debit   — balance check + debit + project insert
  - record_api_key_failure      — atomic failure_count increment + deactivate
  - apply_script_analysis       — project update + profile + scene batch

All mutations go through the Supabase service role for RLS bypass.
"""

import os
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from postgrest.exceptions import APIError
from supabase import create_client, Client

from ..errors import NotFound, PersistenceError
from .models import (
    CharacterProfile,
    Credential,
    Project,
    ProjectStatus,
    Scene,
    SceneStatus,
    Service,
)

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def serialize(fields: dict) -> dict:
    """Make a field dict JSON-safe for PostgREST (enums → values, datetimes → ISO)."""
    out = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        out[key] = value
    return out


class Repository:
    """Interface the core talks to. Implementations must honour the atomicity notes."""

    # ── Credentials ──────────────────────────────────────────────────────

    def list_active_credentials(self, service: Service) -> list[Credential]:
        raise NotImplementedError

    def mark_credential_success(self, credential_id: str) -> bool:
        raise NotImplementedError

    def increment_credential_failure(self, credential_id: str, threshold: int) -> Optional[Credential]:
        raise NotImplementedError

    # ── Balance + Projects ───────────────────────────────────────────────

    def get_balance(self, user_id: str) -> int:
        raise NotImplementedError

    def create_project_with_debit(
        self, user_id: str, fields: dict, cost: int
    ) -> tuple[Optional[Project], int]:
        """Returns (project, balance_after) or (None, current_balance) if short."""
        raise NotImplementedError

    def get_project(self, project_id: str) -> Optional[Project]:
        raise NotImplementedError

    def list_projects(self, user_id: str) -> list[Project]:
        raise NotImplementedError

    def update_project(
        self,
        project_id: str,
        expected_status: Optional[ProjectStatus] = None,
        **fields,
    ) -> Optional[Project]:
        """Same contract as update_scene: None when expected_status no longer holds."""
        raise NotImplementedError

    def apply_script_analysis(
        self,
        project_id: str,
        project_fields: dict,
        profile: Optional[dict],
        scenes: list[dict],
    ) -> tuple[Project, Optional[CharacterProfile], list[Scene]]:
        raise NotImplementedError

    def get_character_profile(self, project_id: str) -> Optional[CharacterProfile]:
        raise NotImplementedError

    # ── Scenes ───────────────────────────────────────────────────────────

    def get_scene(self, scene_id: str) -> Optional[Scene]:
        raise NotImplementedError

    def list_scenes(self, project_id: str) -> list[Scene]:
        raise NotImplementedError

    def list_generating_scenes(self) -> list[Scene]:
        """Scenes in `generating` that already hold a provider task id."""
        raise NotImplementedError

    def update_scene(
        self,
        scene_id: str,
        expected_status: Optional[SceneStatus] = None,
        **fields,
    ) -> Optional[Scene]:
        """
        Update a scene. With expected_status the write only applies while the
        scene is still in that status; returns None when it no longer is.
        """
        raise NotImplementedError


# ═════════════════════════════════════════════════════════════════════════════
# Supabase
# ═════════════════════════════════════════════════════════════════════════════

_service_client: Optional[Client] = None


def get_service_client() -> Client:
    """Lazy-init Supabase client using service role key."""
    global _service_client
    if _service_client is None:
        url = os.getenv("SUPABASE_URL", "")
        key = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
        if not url or not key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _service_client = create_client(url, key)
    return _service_client


class SupabaseRepository(Repository):

    def __init__(self, client: Optional[Client] = None):
        self._client = client

    @property
    def sb(self) -> Client:
        if self._client is None:
            self._client = get_service_client()
        return self._client

    def _execute(self, query, what: str):
        try:
            return query.execute()
        except APIError as e:
            logger.error(f"Supabase {what} failed: {e}")
            raise PersistenceError(f"{what} failed: {e.message or e}") from e

    def _rpc(self, fn: str, params: dict):
        return self._execute(self.sb.rpc(fn, params), f"rpc {fn}").data

    def _first(self, query, what: str) -> Optional[dict]:
        rows = self._execute(query.limit(1), what).data or []
        return rows[0] if rows else None

    # ── Credentials ──────────────────────────────────────────────────────

    def list_active_credentials(self, service: Service) -> list[Credential]:
        result = self._execute(
            self.sb.table("api_keys")
            .select("id, service, key_value, is_active, failure_count, last_used_at, created_at")
            .eq("service", service.value)
            .eq("is_active", True)
            .order("failure_count")
            .order("created_at"),
            "list api_keys",
        )
        return [Credential(**row) for row in result.data or []]

    def mark_credential_success(self, credential_id: str) -> bool:
        result = self._execute(
            self.sb.table("api_keys")
            .update({"failure_count": 0, "last_used_at": now_utc().isoformat()})
            .eq("id", credential_id),
            "mark api_key success",
        )
        return bool(result.data)

    def increment_credential_failure(self, credential_id: str, threshold: int) -> Optional[Credential]:
        row = self._rpc("record_api_key_failure", {
            "p_key_id": credential_id,
            "p_threshold": threshold,
        })
        return Credential(**row) if row else None

    # ── Balance + Projects ───────────────────────────────────────────────

    def get_balance(self, user_id: str) -> int:
        row = self._first(
            self.sb.table("user_credits").select("credits").eq("user_id", user_id),
            "get balance",
        )
        return int(row["credits"]) if row else 0

    def create_project_with_debit(self, user_id: str, fields: dict, cost: int):
        data = self._rpc("create_project_with_debit", {
            "p_user_id": user_id,
            "p_project": serialize(fields),
            "p_cost": cost,
        }) or {}
        project = data.get("project")
        return (Project(**project) if project else None), int(data.get("balance") or 0)

    def get_project(self, project_id: str) -> Optional[Project]:
        row = self._first(
            self.sb.table("projects").select("*").eq("id", project_id),
            "get project",
        )
        return Project(**row) if row else None

    def list_projects(self, user_id: str) -> list[Project]:
        result = self._execute(
            self.sb.table("projects")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True),
            "list projects",
        )
        return [Project(**row) for row in result.data or []]

    def update_project(self, project_id, expected_status=None, **fields):
        fields["updated_at"] = now_utc()
        query = self.sb.table("projects").update(serialize(fields)).eq("id", project_id)
        if expected_status is not None:
            query = query.eq("status", expected_status.value)
        result = self._execute(query, "update project")
        if not result.data:
            if expected_status is None:
                raise NotFound(f"Project {project_id} not found")
            return None
        return Project(**result.data[0])

    def apply_script_analysis(self, project_id, project_fields, profile, scenes):
        data = self._rpc("apply_script_analysis", {
            "p_project_id": project_id,
            "p_project": serialize(project_fields),
            "p_profile": serialize(profile) if profile else None,
            "p_scenes": [serialize(s) for s in scenes],
        }) or {}
        if not data.get("project"):
            raise NotFound(f"Project {project_id} not found")
        saved_profile = data.get("character_profile")
        return (
            Project(**data["project"]),
            CharacterProfile(**saved_profile) if saved_profile else None,
            [Scene(**row) for row in data.get("scenes") or []],
        )

    def get_character_profile(self, project_id: str) -> Optional[CharacterProfile]:
        row = self._first(
            self.sb.table("character_profiles").select("*").eq("project_id", project_id),
            "get character profile",
        )
        return CharacterProfile(**row) if row else None

    # ── Scenes ───────────────────────────────────────────────────────────

    def get_scene(self, scene_id: str) -> Optional[Scene]:
        row = self._first(self.sb.table("scenes").select("*").eq("id", scene_id), "get scene")
        return Scene(**row) if row else None

    def list_scenes(self, project_id: str) -> list[Scene]:
        result = self._execute(
            self.sb.table("scenes")
            .select("*")
            .eq("project_id", project_id)
            .order("scene_number"),
            "list scenes",
        )
        return [Scene(**row) for row in result.data or []]

    def list_generating_scenes(self) -> list[Scene]:
        result = self._execute(
            self.sb.table("scenes")
            .select("*")
            .eq("status", SceneStatus.GENERATING.value)
            .not_.is_("task_id", "null"),
            "list generating scenes",
        )
        return [Scene(**row) for row in result.data or []]

    def update_scene(self, scene_id, expected_status=None, **fields):
        fields["updated_at"] = now_utc()
        query = self.sb.table("scenes").update(serialize(fields)).eq("id", scene_id)
        if expected_status is not None:
            query = query.eq("status", expected_status.value)
        result = self._execute(query, "update scene")
        if not result.data:
            if expected_status is None:
                raise NotFound(f"Scene {scene_id} not found")
            return None
        return Scene(**result.data[0])
