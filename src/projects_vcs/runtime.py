"""Runtime configuration helpers."""

from __future__ import annotations

import ipaddress
import math
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .constants import DEFAULT_BRANCH, READ_CAPABILITY, WRITE_CAPABILITY
from .errors import ErrorCode, ProjectsError

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}
TRANSPORTS = {"stdio", "streamable-http"}
KNOWN_CAPABILITIES = {READ_CAPABILITY, WRITE_CAPABILITY}
BRANCH_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")
DEFAULT_ROOT = "~/.projects-vcs"


@dataclass(frozen=True)
class RuntimeEngineDefaults:
    """Engine settings sourced from environment variables."""

    root: Path
    enabled: bool
    default_branch: str
    network_timeout_seconds: float
    capabilities: frozenset[str]


@dataclass(frozen=True)
class RuntimeAuditDefaults:
    """Audit settings sourced from environment variables."""

    audit_log_path: str
    audit_redact_sensitive: bool
    audit_max_field_chars: int


def get_runtime_defaults(env: Mapping[str, str] | None = None) -> tuple[str, str, int]:
    """Validate and return transport/host/port defaults from environment variables."""
    source = os.environ if env is None else env

    transport_default = source.get("PROJECTS_VCS_TRANSPORT", "stdio")
    if transport_default not in TRANSPORTS:
        raise ValueError("PROJECTS_VCS_TRANSPORT must be 'stdio' or 'streamable-http'.")

    host_default = source.get("PROJECTS_VCS_HOST", "127.0.0.1")

    port_env = source.get("PROJECTS_VCS_PORT", "8000")
    try:
        port_default = int(port_env)
    except ValueError as exc:
        raise ValueError("PROJECTS_VCS_PORT must be an integer.") from exc
    if not (1 <= port_default <= 65535):
        raise ValueError("PROJECTS_VCS_PORT must be between 1 and 65535.")

    validate_streamable_http_binding(
        transport=transport_default,
        host=host_default,
        allow_public_http=get_allow_public_http_default(source),
    )
    return transport_default, host_default, port_default


def get_allow_public_http_default(env: Mapping[str, str] | None = None) -> bool:
    source = os.environ if env is None else env
    return _parse_bool_env(source=source, key="PROJECTS_VCS_ALLOW_PUBLIC_HTTP", default=False)


def get_runtime_engine_defaults(env: Mapping[str, str] | None = None) -> RuntimeEngineDefaults:
    """Return validated engine settings from environment variables."""
    source = os.environ if env is None else env

    root_value = source.get("PROJECTS_VCS_ROOT", "").strip() or DEFAULT_ROOT
    default_branch = source.get("PROJECTS_VCS_DEFAULT_BRANCH", "").strip() or DEFAULT_BRANCH
    validate_branch_name(default_branch, field_name="PROJECTS_VCS_DEFAULT_BRANCH")

    network_timeout = _parse_float_env(
        source=source,
        key="PROJECTS_VCS_NETWORK_TIMEOUT_SECONDS",
        default=60.0,
        min_value=0.1,
    )
    raw_capabilities = source.get("PROJECTS_VCS_CAPABILITIES")
    if raw_capabilities is None:
        capabilities = frozenset(KNOWN_CAPABILITIES)
    else:
        capabilities = parse_capabilities(raw_capabilities, field_name="PROJECTS_VCS_CAPABILITIES")

    return RuntimeEngineDefaults(
        root=Path(root_value).expanduser(),
        enabled=_parse_bool_env(source=source, key="PROJECTS_VCS_ENABLED", default=True),
        default_branch=default_branch,
        network_timeout_seconds=network_timeout,
        capabilities=capabilities,
    )


def get_runtime_audit_defaults(env: Mapping[str, str] | None = None) -> RuntimeAuditDefaults:
    """Return validated audit settings from environment variables."""
    source = os.environ if env is None else env
    audit_max_field_chars = _parse_int_env(
        source=source,
        key="PROJECTS_VCS_AUDIT_MAX_FIELD_CHARS",
        default=4000,
        min_value=0,
    )
    validate_audit_max_field_chars(audit_max_field_chars)
    return RuntimeAuditDefaults(
        audit_log_path=source.get("PROJECTS_VCS_AUDIT_LOG", "").strip(),
        audit_redact_sensitive=_parse_bool_env(
            source=source,
            key="PROJECTS_VCS_AUDIT_REDACT",
            default=True,
        ),
        audit_max_field_chars=audit_max_field_chars,
    )


def validate_audit_max_field_chars(audit_max_field_chars: int) -> None:
    if audit_max_field_chars < 0 or (0 < audit_max_field_chars < 64):
        raise ValueError("audit-max-field-chars must be 0 or >= 64.")


def validate_branch_name(value: str, field_name: str = "default-branch") -> None:
    if not BRANCH_NAME_PATTERN.fullmatch(value) or value.startswith(("-", "/")) or ".." in value:
        raise ValueError(f"{field_name} must be a valid branch name.")


def parse_capabilities(value: str, field_name: str = "capabilities") -> frozenset[str]:
    """Parse a comma-separated capability grant, rejecting unknown names."""
    granted = frozenset(parse_csv_values(value))
    unknown = sorted(granted - KNOWN_CAPABILITIES)
    if unknown:
        allowed = ", ".join(sorted(KNOWN_CAPABILITIES))
        raise ValueError(f"{field_name} contains unknown capabilities {unknown}; allowed: {allowed}.")
    return granted


def validate_streamable_http_binding(transport: str, host: str, allow_public_http: bool) -> None:
    """Validate host exposure policy for streamable HTTP transport."""
    if transport != "streamable-http":
        return
    if not host.strip():
        raise ValueError("Host must not be empty when using streamable-http transport.")
    if not is_loopback_host(host) and not allow_public_http:
        raise ValueError(
            "Refusing non-loopback streamable-http binding without explicit opt-in. "
            "Set --allow-public-http or PROJECTS_VCS_ALLOW_PUBLIC_HTTP=true."
        )


def is_loopback_host(host: str) -> bool:
    """Return whether a host value maps to a loopback interface."""
    normalized = host.strip().lower().strip("[]")
    if normalized in {"localhost", "127.0.0.1", "::1"}:
        return True
    try:
        return ipaddress.ip_address(normalized).is_loopback
    except ValueError:
        return False


def parse_csv_values(value: str | None) -> tuple[str, ...]:
    """Parse comma-separated values into a normalized tuple."""
    if not value:
        return ()
    return tuple(part.strip() for part in value.split(",") if part.strip())


def _parse_bool_env(source: Mapping[str, str], key: str, default: bool) -> bool:
    raw = source.get(key)
    if raw is None or not str(raw).strip():
        return default
    normalized = str(raw).strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ValueError(f"{key} must be a boolean value (true/false).")


def _parse_int_env(
    source: Mapping[str, str],
    key: str,
    default: int,
    min_value: int | None = None,
) -> int:
    raw = source.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        parsed = int(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer.") from exc
    if min_value is not None and parsed < min_value:
        raise ValueError(f"{key} must be >= {min_value}.")
    return parsed


def _parse_float_env(
    source: Mapping[str, str],
    key: str,
    default: float,
    min_value: float | None = None,
) -> float:
    raw = source.get(key)
    if raw is None or not str(raw).strip():
        return default
    try:
        parsed = float(str(raw).strip())
    except ValueError as exc:
        raise ValueError(f"{key} must be a number.") from exc
    if not math.isfinite(parsed):
        raise ValueError(f"{key} must be a finite number.")
    if min_value is not None and parsed < min_value:
        raise ValueError(f"{key} must be >= {min_value}.")
    return parsed


def ensure_operation_allowed(defaults: RuntimeEngineDefaults, capability: str) -> None:
    """Apply the availability check and capability gate before an operation."""
    if not defaults.enabled:
        raise ProjectsError(
            ErrorCode.NOT_FOUND,
            "Projects feature is not enabled",
            "Set PROJECTS_VCS_ENABLED=true to enable project operations.",
        )
    if capability not in defaults.capabilities:
        raise ProjectsError(
            ErrorCode.PERMISSION_DENIED,
            f"Capability '{capability}' is not granted",
            "Grant it through PROJECTS_VCS_CAPABILITIES.",
            {"capability": capability},
        )
