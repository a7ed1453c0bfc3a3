"""Filesystem helpers for project settings, manifests and merge state."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import yaml

from .errors import ErrorCode, ProjectsError


@contextmanager
def _mapped_os_errors(action: str, path: Path) -> Iterator[None]:
    try:
        yield
    except PermissionError as exc:
        raise ProjectsError(
            ErrorCode.VCS_BACKEND_ERROR,
            f"Permission denied while {action} {path}",
            "Check directory permissions under the projects root.",
        ) from exc
    except yaml.YAMLError as exc:
        raise ProjectsError(
            ErrorCode.VCS_BACKEND_ERROR,
            f"Invalid YAML content in {path.name}",
            "Repair or remove the file and retry.",
            {"error": str(exc)},
        ) from exc


class FileManager:
    """Text and YAML persistence for files the engine owns."""

    def write_text(self, path: Path, content: str) -> None:
        with _mapped_os_errors("writing", path):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

    def write_yaml(self, path: Path, payload: dict[str, Any]) -> None:
        rendered = yaml.safe_dump(payload, sort_keys=False, allow_unicode=False)
        self.write_text(path, rendered)

    def read_yaml(self, path: Path) -> dict[str, Any]:
        """Return the mapping stored at ``path``; missing or non-mapping files read as empty."""
        if not path.is_file():
            return {}
        with _mapped_os_errors("reading", path):
            loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
        return loaded if isinstance(loaded, dict) else {}

    def remove(self, path: Path) -> None:
        with _mapped_os_errors("removing", path):
            path.unlink(missing_ok=True)
