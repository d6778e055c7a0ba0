"""Task store port and the JSON ``tasks.json`` adapter.

Subtasks are addressed with dotted ids (``7.2`` is subtask 2 of task 7).
The pipeline only reads linkage and writes status; it never creates or edits
tasks.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, field_validator

from . import config
from .services.errors import ValidationFailedError

TASK_STATUS_VALUES = (
    "pending",
    "in-progress",
    "done",
    "review",
    "deferred",
    "cancelled",
    "blocked",
)
TaskStatus = Literal[
    "pending", "in-progress", "done", "review", "deferred", "cancelled", "blocked"
]


def _clean_id(value: object) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    return None


def parent_task_id(task_id: str) -> str | None:
    """Return the parent id for a dotted subtask id.

    Example:
        >>> parent_task_id("7.2")
        '7'
        >>> parent_task_id("7") is None
        True
    """
    head, sep, _ = task_id.rpartition(".")
    return head if sep and head else None


def root_task_id(task_id: str) -> str:
    """Return the top-level task id.

    Example:
        >>> root_task_id("7.2.1")
        '7'
    """
    return task_id.split(".", 1)[0]


class Task(BaseModel):
    """Normalized task or subtask record."""

    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    description: str = ""
    status: TaskStatus = "pending"
    parent_id: str | None = None
    dependency_ids: tuple[str, ...] = ()
    subtask_ids: tuple[str, ...] = ()
    safety_mode: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: object) -> object:
        normalized = _clean_id(value)
        if normalized is None:
            raise ValueError("missing task id")
        return normalized

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: object) -> object:
        if value is None:
            return "pending"
        if isinstance(value, str):
            return value.strip().lower() or "pending"
        return value

    @field_validator("parent_id", mode="before")
    @classmethod
    def _normalize_parent(cls, value: object) -> object:
        return _clean_id(value)

    @field_validator("dependency_ids", "subtask_ids", mode="before")
    @classmethod
    def _normalize_ids(cls, value: object) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            return ()
        ids: list[str] = []
        for entry in value:
            entry_id = _clean_id(entry)
            if entry_id and entry_id not in ids:
                ids.append(entry_id)
        return tuple(ids)

    @property
    def is_subtask(self) -> bool:
        return self.parent_id is not None or "." in self.id


class TaskStore(Protocol):
    """Task store operations the pipeline depends on."""

    def get_task(self, task_id: str) -> Task | None: ...

    def set_task_status(self, task_id: str, status: TaskStatus) -> None: ...


def validate_status(status: str) -> TaskStatus:
    normalized = status.strip().lower()
    if normalized not in TASK_STATUS_VALUES:
        raise ValidationFailedError(
            f"invalid task status: {status!r}",
            recovery_hint=f"use one of: {', '.join(TASK_STATUS_VALUES)}",
        )
    return normalized  # type: ignore[return-value]


class JsonTaskStore:
    """Task store backed by a ``tasks.json`` document.

    Accepts either ``{"tasks": [...]}`` or a tagged document
    ``{"<tag>": {"tasks": [...]}}``. Subtasks are nested under their parent
    with numeric local ids.
    """

    def __init__(self, path: Path, *, tag: str = "master") -> None:
        self.path = path
        self.tag = tag
        self._lock = threading.RLock()

    def _task_list(self, payload: dict) -> list:
        if isinstance(payload.get("tasks"), list):
            return payload["tasks"]
        tagged = payload.get(self.tag)
        if isinstance(tagged, dict) and isinstance(tagged.get("tasks"), list):
            return tagged["tasks"]
        raise ValidationFailedError(
            f"no task list for tag {self.tag!r} in {self.path}",
            recovery_hint="check the task file format or tag",
        )

    def _load(self) -> dict:
        payload = config.load_json(self.path)
        if payload is None:
            raise ValidationFailedError(f"task file not found: {self.path}")
        return payload

    @staticmethod
    def _find(entries: list, task_id: str) -> dict | None:
        parts = task_id.split(".")
        current: dict | None = None
        candidates = entries
        for part in parts:
            current = next(
                (entry for entry in candidates if isinstance(entry, dict) and _clean_id(entry.get("id")) == part),
                None,
            )
            if current is None:
                return None
            candidates = current.get("subtasks") or []
        return current

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            entries = self._task_list(self._load())
            raw = self._find(entries, task_id)
        if raw is None:
            return None
        subtasks = raw.get("subtasks") or []
        return Task.model_validate(
            {
                **{key: value for key, value in raw.items() if key != "subtasks"},
                "id": task_id,
                "parent_id": parent_task_id(task_id),
                "dependency_ids": raw.get("dependencies"),
                "subtask_ids": [
                    f"{task_id}.{_clean_id(sub.get('id'))}"
                    for sub in subtasks
                    if isinstance(sub, dict) and _clean_id(sub.get("id"))
                ],
                "safety_mode": raw.get("safetyMode") or raw.get("safety_mode"),
            }
        )

    def set_task_status(self, task_id: str, status: TaskStatus) -> None:
        normalized = validate_status(status)
        with self._lock:
            payload = self._load()
            raw = self._find(self._task_list(payload), task_id)
            if raw is None:
                raise ValidationFailedError(f"unknown task: {task_id}")
            raw["status"] = normalized
            config.write_json(self.path, payload)
