from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from supabase import Client

from .database import is_unique_violation, response_rows

logger = logging.getLogger(__name__)


class ProjectExistsError(Exception):
    pass


@dataclass(frozen=True)
class Project:
    id: int
    name: str


def _coerce_project(row: dict[str, Any]) -> Project:
    return Project(id=int(row["id"]), name=str(row.get("name") or ""))


def name_key(name: str) -> str:
    """Key matched against the generated ``projects.name_key`` column (``lower(name)``)."""
    return name.strip().lower()


class ProjectService:
    def __init__(self, supabase_client: Client) -> None:
        self.db = supabase_client

    def list_names(self) -> list[str]:
        response = self.db.table("projects").select("name").order("name").execute()
        return [str(r.get("name")) for r in response_rows(response) if r.get("name")]

    def find_by_name(self, name: str) -> Optional[Project]:
        """Case-insensitive exact match."""
        name = (name or "").strip()
        if not name:
            return None
        response = (
            self.db.table("projects")
            .select("id,name")
            .eq("name_key", name_key(name))
            .limit(1)
            .execute()
        )
        rows = response_rows(response)
        return _coerce_project(rows[0]) if rows else None

    def create(self, name: str) -> Project:
        name = (name or "").strip()
        if not name:
            raise ValueError("Project name is required")
        try:
            response = self.db.table("projects").insert({"name": name}).execute()
        except Exception as exc:
            if is_unique_violation(exc):
                raise ProjectExistsError(name) from exc
            raise
        rows = response_rows(response)
        if not rows:
            raise RuntimeError(f"Failed to create project {name!r}")
        logger.info("Created new project: %s", name)
        return _coerce_project(rows[0])

    def find_or_create_by_name(self, name: str) -> Project:
        existing = self.find_by_name(name)
        if existing:
            return existing
        try:
            return self.create(name)
        except ProjectExistsError:
            # lost the insert race to a concurrent writer
            winner = self.find_by_name(name)
            if winner is None:
                raise
            return winner

    def names_by_id(self, project_ids: Iterable[int]) -> dict[int, str]:
        ids = sorted(set(project_ids))
        if not ids:
            return {}
        response = self.db.table("projects").select("id,name").in_("id", ids).execute()
        return {int(r["id"]): str(r.get("name") or "") for r in response_rows(response)}
