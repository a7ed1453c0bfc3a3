"""JSONL audit trail for project operations."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
TRUNCATION_MARKER = "...[TRUNCATED]"

_SENSITIVE_KEY = re.compile(r"(?i)(password|passwd|secret|token|api[_-]?key|authorization|credential)")
_OBJECT_ID = re.compile(r"[0-9a-fA-F]{40}|[0-9a-fA-F]{64}")


def _keep_object_ids(match: re.Match[str]) -> str:
    token = match.group(0)
    return token if _OBJECT_ID.fullmatch(token) else REDACTED


# Applied in order; userinfo first so remote URLs keep their host.
_STRING_RULES: tuple[tuple[re.Pattern[str], str | Callable[[re.Match[str]], str]], ...] = (
    (re.compile(r"(?i)\b([a-z][a-z0-9+.\-]*://)[^/@\s]+@"), rf"\1{REDACTED}@"),
    (
        re.compile(r"(?i)\b(password|passwd|secret|token|api[_-]?key|authorization)\s*[:=]\s*[^\s,;]+"),
        rf"\1={REDACTED}",
    ),
    (re.compile(r"(?i)\bbearer\s+[a-z0-9\-._~+/]+=*"), f"Bearer {REDACTED}"),
    (re.compile(r"(?i)\b(?:sk|rk|pk|ghp|gho|github_pat|glpat)[_-][A-Za-z0-9_\-]{16,}\b"), REDACTED),
    (re.compile(r"\b[A-Za-z0-9+/]{40,}={0,2}\b"), _keep_object_ids),
    (re.compile(r"\b[A-Za-z0-9_\-]{64,}\b"), _keep_object_ids),
)


def redact_string(value: str) -> str:
    for pattern, replacement in _STRING_RULES:
        value = pattern.sub(replacement, value)
    return value


def redact_payload(payload: Any) -> Any:
    """Mask credential-like keys and secrets embedded in string values."""
    if isinstance(payload, dict):
        return {
            key: REDACTED
            if _SENSITIVE_KEY.search(str(key)) and value not in (None, "", False)
            else redact_payload(value)
            for key, value in payload.items()
        }
    return _map_strings(payload, redact_string)


def _map_strings(payload: Any, transform: Callable[[str], str]) -> Any:
    if isinstance(payload, dict):
        return {key: _map_strings(value, transform) for key, value in payload.items()}
    if isinstance(payload, list):
        return [_map_strings(item, transform) for item in payload]
    if isinstance(payload, str):
        return transform(payload)
    return payload


def _clip(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    if limit <= len(TRUNCATION_MARKER):
        return TRUNCATION_MARKER[:limit]
    return value[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


@dataclass(slots=True)
class AuditLogger:
    """Append one JSON line per tool or CLI operation when a log path is set."""

    log_path: Path | None = None
    redact_sensitive: bool = True
    max_field_chars: int = 4000
    _write_lock: Lock = field(default_factory=Lock, init=False, repr=False, compare=False)

    @property
    def enabled(self) -> bool:
        return self.log_path is not None

    def log_operation_event(
        self,
        operation: str,
        user: str,
        status: str,
        request_payload: dict[str, Any],
        response_payload: dict[str, Any],
    ) -> None:
        if self.log_path is None:
            return

        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": "projects_operation",
            "operation": operation,
            "user": user,
            "status": status,
            "request": self._prepare(request_payload),
            "response": self._prepare(response_payload),
        }
        line = json.dumps(record, ensure_ascii=True, sort_keys=True, default=str) + "\n"
        try:
            with self._write_lock:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with self.log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
        except OSError:
            # Audit write failures never propagate to the caller.
            logger.warning("Failed to write audit event for %s", operation, exc_info=True)

    def _prepare(self, payload: dict[str, Any]) -> dict[str, Any]:
        if self.redact_sensitive:
            payload = redact_payload(payload)
        if self.max_field_chars > 0:
            limit = self.max_field_chars
            payload = _map_strings(payload, lambda text: _clip(text, limit))
        return payload
