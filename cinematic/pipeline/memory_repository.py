"""
In-memory Repository for local development and tests.

Activates when STORE_BACKEND=memory. A single lock guards every table so the
atomic units (debit + create, failure increment, analysis batch) behave like
their Postgres counterparts. State is lost on restart.
"""

import threading
from typing import Optional
from uuid import uuid4

from ..errors import NotFound
from .models import (
    CharacterProfile,
    Credential,
    Project,
    Scene,
    SceneStatus,
    Service,
)
from .repository import Repository, now_utc


class InMemoryRepository(Repository):

    def __init__(self):
        self._lock = threading.Lock()
        self.credentials: dict[str, Credential] = {}
        self.balances: dict[str, int] = {}
        self.projects: dict[str, Project] = {}
        self.profiles: dict[str, CharacterProfile] = {}
        self.scenes: dict[str, Scene] = {}

    # ── Seeding ──────────────────────────────────────────────────────────

    def add_credential(self, service: Service, key_value: str, **fields) -> Credential:
        cred = Credential(
            id=fields.pop("id", None) or str(uuid4()),
            service=service,
            key_value=key_value,
            created_at=now_utc(),
            **fields,
        )
        with self._lock:
            self.credentials[cred.id] = cred
        return cred

    def set_balance(self, user_id: str, credits: int):
        with self._lock:
            self.balances[user_id] = credits

    def add_project(self, **fields) -> Project:
        project = Project(id=fields.pop("id", None) or str(uuid4()), created_at=now_utc(), **fields)
        with self._lock:
            self.projects[project.id] = project
        return project

    def add_scene(self, **fields) -> Scene:
        scene = Scene(id=fields.pop("id", None) or str(uuid4()), created_at=now_utc(), **fields)
        with self._lock:
            self.scenes[scene.id] = scene
        return scene

    # ── Credentials ──────────────────────────────────────────────────────

    def list_active_credentials(self, service: Service) -> list[Credential]:
        with self._lock:
            active = [c for c in self.credentials.values() if c.service == service and c.is_active]
        # sorted() is stable, so ties keep insertion order
        return sorted(active, key=lambda c: c.failure_count)

    def mark_credential_success(self, credential_id: str) -> bool:
        with self._lock:
            cred = self.credentials.get(credential_id)
            if cred is None:
                return False
            self.credentials[credential_id] = cred.model_copy(
                update={"failure_count": 0, "last_used_at": now_utc()}
            )
            return True

    def increment_credential_failure(self, credential_id: str, threshold: int) -> Optional[Credential]:
        with self._lock:
            cred = self.credentials.get(credential_id)
            if cred is None:
                return None
            count = cred.failure_count + 1
            updated = cred.model_copy(update={
                "failure_count": count,
                "is_active": cred.is_active and count < threshold,
            })
            self.credentials[credential_id] = updated
            return updated

    # ── Balance + Projects ───────────────────────────────────────────────

    def get_balance(self, user_id: str) -> int:
        with self._lock:
            return self.balances.get(user_id, 0)

    def create_project_with_debit(self, user_id: str, fields: dict, cost: int):
        with self._lock:
            balance = self.balances.get(user_id, 0)
            if balance < cost:
                return None, balance
            now = now_utc()
            project = Project(id=str(uuid4()), user_id=user_id, created_at=now, updated_at=now, **fields)
            self.balances[user_id] = balance - cost
            self.projects[project.id] = project
            return project, balance - cost

    def get_project(self, project_id: str) -> Optional[Project]:
        with self._lock:
            return self.projects.get(project_id)

    def list_projects(self, user_id: str) -> list[Project]:
        with self._lock:
            owned = [p for p in self.projects.values() if p.user_id == user_id]
        return list(reversed(owned))

    def update_project(self, project_id, expected_status=None, **fields):
        with self._lock:
            project = self.projects.get(project_id)
            if project is None:
                raise NotFound(f"Project {project_id} not found")
            if expected_status is not None and project.status != expected_status:
                return None
            fields["updated_at"] = now_utc()
            updated = project.model_copy(update=fields)
            self.projects[project_id] = updated
            return updated

    def apply_script_analysis(self, project_id, project_fields, profile, scenes):
        with self._lock:
            project = self.projects.get(project_id)
            if project is None:
                raise NotFound(f"Project {project_id} not found")
            now = now_utc()
            updated = project.model_copy(update={**project_fields, "updated_at": now})

            saved_profile = None
            if profile:
                saved_profile = CharacterProfile(id=str(uuid4()), project_id=project_id, **profile)

            saved_scenes = [
                Scene(id=str(uuid4()), project_id=project_id, created_at=now, updated_at=now, **row)
                for row in scenes
            ]

            # Build everything before writing so a bad row leaves no partial batch
            self.projects[project_id] = updated
            if saved_profile:
                self.profiles[project_id] = saved_profile
            for scene in saved_scenes:
                self.scenes[scene.id] = scene
            return updated, saved_profile, saved_scenes

    def get_character_profile(self, project_id: str) -> Optional[CharacterProfile]:
        with self._lock:
            return self.profiles.get(project_id)

    # ── Scenes ───────────────────────────────────────────────────────────

    def get_scene(self, scene_id: str) -> Optional[Scene]:
        with self._lock:
            return self.scenes.get(scene_id)

    def list_scenes(self, project_id: str) -> list[Scene]:
        with self._lock:
            rows = [s for s in self.scenes.values() if s.project_id == project_id]
        return sorted(rows, key=lambda s: s.scene_number)

    def list_generating_scenes(self) -> list[Scene]:
        with self._lock:
            return [
                s for s in self.scenes.values()
                if s.status == SceneStatus.GENERATING and s.task_id
            ]

    def update_scene(self, scene_id, expected_status=None, **fields):
        with self._lock:
            scene = self.scenes.get(scene_id)
            if scene is None:
                raise NotFound(f"Scene {scene_id} not found")
            if expected_status is not None and scene.status != expected_status:
                return None
            fields["updated_at"] = now_utc()
            updated = scene.model_copy(update=fields)
            self.scenes[scene_id] = updated
            return updated
