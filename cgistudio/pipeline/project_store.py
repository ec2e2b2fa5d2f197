"""
Project & user persistence.

The pipeline only ever reads a project and writes partial updates to it.
Every write a run makes is guarded by its run token: the update is applied
only while `projects.run_id` still equals the token, so a superseded run
cannot clobber the state of the run that replaced it.

SupabaseProjectStore talks to the `projects` and `users` tables through the
async service-role client (bypasses RLS). InMemoryProjectStore backs local
development and the test-suite.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable, Optional

from supabase import AsyncClient, acreate_client

from ..config import Settings
from ..errors import ConfigurationError
from .models import Project, ProjectStatus, User

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _status_values(statuses: Iterable[ProjectStatus]) -> list[str]:
    return [s.value if isinstance(s, ProjectStatus) else str(s) for s in statuses]


class ProjectStore(ABC):
    # ── Used by the pipeline ─────────────────────────────────────────────────

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        ...

    @abstractmethod
    async def update_project(self, project_id: str, fields: dict, run_id: Optional[str] = None) -> bool:
        """Apply a partial update. With `run_id`, only while the run owns the project."""

    @abstractmethod
    async def claim_run(
        self,
        project_id: str,
        run_id: str,
        allowed_statuses: Iterable[ProjectStatus],
        previous_run_id: Optional[str] = None,
        fields: Optional[dict] = None,
    ) -> bool:
        """Compare-and-set the run token.

        Succeeds only if the project's status is one of `allowed_statuses`
        and its current run token equals `previous_run_id`.
        """

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def update_user_credits(self, user_id: str, new_balance: int) -> None:
        ...

    # ── Used by the route layer ──────────────────────────────────────────────

    @abstractmethod
    async def create_project(self, project: Project) -> Project:
        ...

    @abstractmethod
    async def list_user_projects(self, user_id: str) -> list[Project]:
        ...

    @abstractmethod
    async def delete_project(self, project_id: str) -> bool:
        ...


# ═════════════════════════════════════════════════════════════════════════════
# Supabase
# ═════════════════════════════════════════════════════════════════════════════

class SupabaseProjectStore(ProjectStore):
    """Service-role access through supabase's AsyncClient."""

    def __init__(self, settings: Settings, client: Optional[AsyncClient] = None):
        self._settings = settings
        self._client = client
        self._connect_lock = asyncio.Lock()

    async def _sb(self) -> AsyncClient:
        """Lazy-init Supabase client using service role key."""
        if self._client is None:
            async with self._connect_lock:
                if self._client is None:
                    if not self._settings.supabase_configured:
                        raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
                    self._client = await acreate_client(
                        self._settings.supabase_url, self._settings.supabase_service_role_key
                    )
        return self._client

    async def get_project(self, project_id: str) -> Optional[Project]:
        sb = await self._sb()
        result = await sb.table("projects").select("*").eq("id", project_id).limit(1).execute()
        if not result.data:
            return None
        return Project.model_validate(result.data[0])

    async def update_project(self, project_id: str, fields: dict, run_id: Optional[str] = None) -> bool:
        sb = await self._sb()
        query = sb.table("projects").update({**fields, "updated_at": _now_iso()}).eq("id", project_id)
        if run_id is not None:
            query = query.eq("run_id", run_id)
        result = await query.execute()
        return bool(result.data)

    async def claim_run(
        self,
        project_id: str,
        run_id: str,
        allowed_statuses: Iterable[ProjectStatus],
        previous_run_id: Optional[str] = None,
        fields: Optional[dict] = None,
    ) -> bool:
        sb = await self._sb()
        update = {**(fields or {}), "run_id": run_id, "updated_at": _now_iso()}
        query = (
            sb.table("projects")
            .update(update)
            .eq("id", project_id)
            .in_("status", _status_values(allowed_statuses))
        )
        if previous_run_id is None:
            query = query.is_("run_id", "null")
        else:
            query = query.eq("run_id", previous_run_id)
        result = await query.execute()
        return bool(result.data)

    async def get_user(self, user_id: str) -> Optional[User]:
        sb = await self._sb()
        result = await sb.table("users").select("id, email, credits").eq("id", user_id).limit(1).execute()
        if not result.data:
            return None
        return User.model_validate(result.data[0])

    async def update_user_credits(self, user_id: str, new_balance: int) -> None:
        sb = await self._sb()
        await sb.table("users").update({
            "credits": new_balance,
            "updated_at": _now_iso(),
        }).eq("id", user_id).execute()

    async def create_project(self, project: Project) -> Project:
        sb = await self._sb()
        row = project.model_dump(mode="json", exclude_none=True)
        result = await sb.table("projects").insert(row).execute()
        return Project.model_validate(result.data[0]) if result.data else project

    async def list_user_projects(self, user_id: str) -> list[Project]:
        sb = await self._sb()
        result = await (
            sb.table("projects")
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [Project.model_validate(row) for row in result.data or []]

    async def delete_project(self, project_id: str) -> bool:
        sb = await self._sb()
        result = await sb.table("projects").delete().eq("id", project_id).execute()
        return bool(result.data)


# ═════════════════════════════════════════════════════════════════════════════
# In-memory
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryProjectStore(ProjectStore):
    """Dict-backed store. Keeps every applied update in `history`."""

    def __init__(self):
        self.projects: dict[str, Project] = {}
        self.users: dict[str, User] = {}
        self.history: list[tuple[str, dict]] = []

    def add_user(self, user: User) -> User:
        self.users[user.id] = user
        return user

    def updates_for(self, project_id: str) -> list[dict]:
        return [fields for pid, fields in self.history if pid == project_id]

    def _apply(self, project_id: str, fields: dict):
        project = self.projects[project_id]
        merged = {**project.model_dump(), **fields, "updated_at": _now_iso()}
        self.projects[project_id] = Project.model_validate(merged)
        self.history.append((project_id, dict(fields)))

    async def get_project(self, project_id: str) -> Optional[Project]:
        project = self.projects.get(project_id)
        return project.model_copy() if project else None

    async def update_project(self, project_id: str, fields: dict, run_id: Optional[str] = None) -> bool:
        project = self.projects.get(project_id)
        if project is None:
            return False
        if run_id is not None and project.run_id != run_id:
            return False
        self._apply(project_id, fields)
        return True

    async def claim_run(
        self,
        project_id: str,
        run_id: str,
        allowed_statuses: Iterable[ProjectStatus],
        previous_run_id: Optional[str] = None,
        fields: Optional[dict] = None,
    ) -> bool:
        project = self.projects.get(project_id)
        if project is None:
            return False
        if project.status.value not in _status_values(allowed_statuses):
            return False
        if project.run_id != previous_run_id:
            return False
        self._apply(project_id, {**(fields or {}), "run_id": run_id})
        return True

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self.users.get(user_id)
        return user.model_copy() if user else None

    async def update_user_credits(self, user_id: str, new_balance: int) -> None:
        self.users[user_id] = self.users[user_id].model_copy(update={"credits": new_balance})

    async def create_project(self, project: Project) -> Project:
        now = _now_iso()
        stored = project.model_copy(update={"created_at": project.created_at or now, "updated_at": now})
        self.projects[project.id] = stored
        return stored.model_copy()

    async def list_user_projects(self, user_id: str) -> list[Project]:
        owned = [p for p in self.projects.values() if p.user_id == user_id]
        return sorted(owned, key=lambda p: p.created_at or "", reverse=True)

    async def delete_project(self, project_id: str) -> bool:
        return self.projects.pop(project_id, None) is not None


def build_project_store(settings: Settings) -> ProjectStore:
    if settings.supabase_configured:
        return SupabaseProjectStore(settings)
    logger.warning("Supabase not configured — using in-memory project store")
    return InMemoryProjectStore()
