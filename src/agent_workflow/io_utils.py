"""Durable YAML state files and the JSONL action log."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

import yaml

from .utils import _now_iso


def _atomic_write_yaml(path: Path, data: dict[str, Any]) -> None:
    """Write ``data`` next to ``path`` and swap it in with ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    staging = path.parent / f".{path.name}.tmp"
    text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True)
    with open(staging, "w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(staging, path)


def _load_yaml_with_error(path: Path, default: dict[str, Any]) -> tuple[dict[str, Any], Optional[str]]:
    """Return ``(mapping, None)``, or ``(default, reason)`` when the file is unusable.

    A missing or empty file is not an error. Callers that get a reason back
    must not save over the file.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default, None
    except OSError as exc:
        return default, f"{path.name}: {exc}"
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        return default, f"{path.name}: invalid YAML ({exc})"
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: top level is a {type(data).__name__}, not a mapping"
    return data, None


def _append_event(events_path: Path, event: dict[str, Any]) -> None:
    events_path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"timestamp": _now_iso(), **event}
    with open(events_path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, default=str) + "\n")
        handle.flush()
        os.fsync(handle.fileno())
