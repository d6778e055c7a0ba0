"""Configuration and JSON persistence helpers."""

from __future__ import annotations

import datetime as dt
import json
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from . import models
from .services.errors import IoFailedError, ValidationFailedError


def utc_now() -> str:
    """Return the current UTC timestamp in ISO-8601 format.

    Returns:
        UTC timestamp like ``2026-01-18T12:34:56Z``.

    Example:
        >>> utc_now().endswith("Z")
        True
    """
    return format_timestamp(dt.datetime.now(tz=dt.timezone.utc))


def format_timestamp(value: dt.datetime) -> str:
    """Format an aware datetime as a second-precision UTC string.

    Example:
        >>> format_timestamp(dt.datetime(2026, 1, 2, 3, 4, 5, 678, tzinfo=dt.timezone.utc))
        '2026-01-02T03:04:05Z'
    """
    value = value.astimezone(dt.timezone.utc).replace(microsecond=0)
    return value.isoformat().replace("+00:00", "Z")


def parse_timestamp(value: object) -> dt.datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Example:
        >>> parse_timestamp("2026-01-02T03:04:05Z").year
        2026
        >>> parse_timestamp("not a date") is None
        True
    """
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = f"{raw[:-1]}+00:00"
    try:
        parsed = dt.datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def load_json(path: Path) -> dict | None:
    """Load a JSON object from disk.

    Returns:
        Parsed payload, or ``None`` if the file does not exist.

    Example:
        >>> load_json(Path("missing.json")) is None
        True
    """
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise IoFailedError(f"failed to read {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise IoFailedError(f"expected a JSON object in {path}")
    return payload


def write_json(path: Path, payload: dict | BaseModel) -> None:
    """Atomically write a JSON payload to disk."""
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    except OSError as exc:
        raise IoFailedError(f"failed to write {path}: {exc}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.write("\n")
        os.replace(tmp_name, path)
    except OSError as exc:
        Path(tmp_name).unlink(missing_ok=True)
        raise IoFailedError(f"failed to write {path}: {exc}") from exc


def load_pipeline_config(path: Path | None) -> models.PipelineConfig:
    """Load pipeline configuration, falling back to defaults when absent."""
    if path is None:
        return models.PipelineConfig()
    payload = load_json(path)
    if payload is None:
        return models.PipelineConfig()
    try:
        return models.PipelineConfig.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationFailedError(
            f"invalid pipeline config {path}: {exc}",
            recovery_hint="fix or remove the config file",
        ) from exc
