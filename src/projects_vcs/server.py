"""MCP server entrypoint and tool definitions for the projects engine."""

from __future__ import annotations

import argparse
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Annotated, Any, Callable

from mcp.server.fastmcp import FastMCP
from pydantic import BaseModel, Field, ValidationError

from .audit import AuditLogger
from .constants import READ_CAPABILITY, WRITE_CAPABILITY
from .engine import ProjectsEngine
from .errors import ErrorCode, ProjectsError
from .models import (
    BranchRequest,
    CommitRequest,
    CommitsRequest,
    CreateProjectRequest,
    ProjectUpdateRequest,
    PullRequest,
    PushRequest,
    RemoteSpec,
    ResolveRequest,
)
from .runtime import (
    RuntimeEngineDefaults,
    ensure_operation_allowed,
    get_allow_public_http_default,
    get_runtime_audit_defaults,
    get_runtime_defaults,
    get_runtime_engine_defaults,
    validate_audit_max_field_chars,
    validate_streamable_http_binding,
)

logger = logging.getLogger(__name__)


def _build_fastmcp() -> FastMCP:
    """Instantiate FastMCP with compatibility fallbacks for older SDK versions."""
    kwargs: dict[str, Any] = {
        "name": "projects-vcs",
        "instructions": (
            "Manage version-controlled projects. Create or activate a project with "
            "projects_create and projects_update, inspect it with projects_status, "
            "projects_files and projects_commits, record work with projects_stage and "
            "projects_commit, and synchronise with projects_pull and projects_push."
        ),
        "version": "0.1.0",
        "json_response": True,
    }
    optional_keys = ("version", "json_response")

    while True:
        try:
            return FastMCP(**kwargs)
        except TypeError as exc:
            message = str(exc).lower()
            if "unexpected keyword argument" not in message:
                raise

            removed_key = next((key for key in optional_keys if key in message and key in kwargs), None)
            if removed_key is None:
                raise
            kwargs.pop(removed_key, None)
            logger.debug(
                "FastMCP constructor does not support '%s'; using compatibility fallback.",
                removed_key,
            )


mcp = _build_fastmcp()

engine: ProjectsEngine | None = None
engine_settings: RuntimeEngineDefaults | None = None
audit_logger = AuditLogger()

READ_ONLY_TOOL_ANNOTATIONS = {
    "readOnlyHint": True,
    "idempotentHint": True,
    "destructiveHint": False,
    "openWorldHint": False,
}

WRITE_TOOL_ANNOTATIONS = {
    "readOnlyHint": False,
    "idempotentHint": False,
    "destructiveHint": False,
    "openWorldHint": False,
}

NETWORK_TOOL_ANNOTATIONS = {
    "readOnlyHint": False,
    "idempotentHint": False,
    "destructiveHint": False,
    "openWorldHint": True,
}

DESTRUCTIVE_WRITE_TOOL_ANNOTATIONS = {
    "readOnlyHint": False,
    "idempotentHint": False,
    "destructiveHint": True,
    "openWorldHint": False,
}

UserParam = Annotated[str, Field(min_length=1, description="Opaque caller identity")]
ProjectParam = Annotated[
    str | None,
    Field(description="Project id; defaults to the caller's active project"),
]


def _register_tool(annotations: dict[str, bool]):
    """Register tool with annotations, falling back when the SDK lacks the kwarg."""

    def decorator(func):
        try:
            return mcp.tool(annotations=annotations)(func)
        except TypeError as exc:
            message = str(exc).lower()
            if "annotations" not in message and "unexpected keyword argument" not in message:
                raise
            logger.debug("FastMCP tool annotations not supported in this SDK version; using fallback.")
            return mcp.tool()(func)

    return decorator


def _get_settings() -> RuntimeEngineDefaults:
    global engine_settings
    if engine_settings is None:
        engine_settings = get_runtime_engine_defaults()
    return engine_settings


def _get_engine() -> ProjectsEngine:
    global engine
    if engine is None:
        settings = _get_settings()
        engine = ProjectsEngine(
            settings.root,
            default_branch=settings.default_branch,
            network_timeout=settings.network_timeout_seconds,
        )
    return engine


def _success(result: BaseModel | dict[str, Any]) -> dict[str, Any]:
    payload = result.model_dump(mode="json") if isinstance(result, BaseModel) else dict(result)
    payload.setdefault("status", "success")
    return payload


def _error_payload_from_exception(exc: Exception) -> dict[str, Any]:
    """Convert internal exceptions into stable MCP error payloads."""
    if isinstance(exc, ProjectsError):
        return exc.to_payload()
    if isinstance(exc, ValidationError):
        return {
            "status": "error",
            "error_code": ErrorCode.VALIDATION_ERROR.value,
            "message": "Input validation failed",
            "suggestion": "Check field constraints and request schema.",
            "details": {"errors": json.loads(exc.json(include_url=False))},
        }
    logger.exception("Unhandled server exception", exc_info=exc)
    return {
        "status": "error",
        "error_code": ErrorCode.UNEXPECTED_ERROR.value,
        "message": str(exc),
        "suggestion": "Check server logs and retry the operation.",
        "details": {},
    }


def _build_correlation_id() -> str:
    """Generate short operation correlation IDs for diagnostics."""
    return uuid.uuid4().hex[:12]


def _log_tool_phase(
    *,
    correlation_id: str,
    tool_name: str,
    phase: str,
    status: str,
    elapsed_seconds: float,
    details: dict[str, Any] | None = None,
) -> None:
    """Emit structured phase-level diagnostics for tool execution."""
    payload: dict[str, Any] = {
        "event_type": "projects_tool_phase",
        "correlation_id": correlation_id,
        "tool_name": tool_name,
        "phase": phase,
        "status": status,
        "elapsed_ms": round(elapsed_seconds * 1000, 3),
    }
    if details:
        payload["details"] = details
    logger.info("projects_tool_phase %s", json.dumps(payload, ensure_ascii=True, sort_keys=True))


def _finish_with_error(
    *,
    correlation_id: str,
    tool_name: str,
    user: str,
    total_start: float,
    request_payload: dict[str, Any],
    error_payload: dict[str, Any],
) -> dict[str, Any]:
    error_payload["correlation_id"] = correlation_id
    _log_tool_phase(
        correlation_id=correlation_id,
        tool_name=tool_name,
        phase="total",
        status="error",
        elapsed_seconds=time.perf_counter() - total_start,
        details={"error_code": error_payload.get("error_code")},
    )
    audit_logger.log_operation_event(
        operation=tool_name,
        user=user,
        status="error",
        request_payload=request_payload,
        response_payload=error_payload,
    )
    return error_payload


def _run_tool(
    tool_name: str,
    capability: str,
    user: str,
    request_payload: dict[str, Any],
    operation: Callable[[ProjectsEngine], dict[str, Any]],
) -> dict[str, Any]:
    """Gate, execute and audit one tool call."""
    total_start = time.perf_counter()
    correlation_id = _build_correlation_id()
    enriched_request_payload = dict(request_payload)
    enriched_request_payload["correlation_id"] = correlation_id

    validation_start = time.perf_counter()
    try:
        if not user.strip():
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                "A caller identity is required",
                "Pass a non-empty user.",
            )
        ensure_operation_allowed(_get_settings(), capability)
        service = _get_engine()
    except Exception as exc:  # noqa: BLE001
        _log_tool_phase(
            correlation_id=correlation_id,
            tool_name=tool_name,
            phase="validation",
            status="rejected",
            elapsed_seconds=time.perf_counter() - validation_start,
            details={"capability": capability, "exception": exc.__class__.__name__},
        )
        return _finish_with_error(
            correlation_id=correlation_id,
            tool_name=tool_name,
            user=user,
            total_start=total_start,
            request_payload=enriched_request_payload,
            error_payload=_error_payload_from_exception(exc),
        )
    _log_tool_phase(
        correlation_id=correlation_id,
        tool_name=tool_name,
        phase="validation",
        status="ok",
        elapsed_seconds=time.perf_counter() - validation_start,
        details={"capability": capability},
    )

    operation_start = time.perf_counter()
    try:
        response_payload = dict(operation(service))
    except Exception as exc:  # noqa: BLE001
        _log_tool_phase(
            correlation_id=correlation_id,
            tool_name=tool_name,
            phase="operation_execution",
            status="error",
            elapsed_seconds=time.perf_counter() - operation_start,
            details={"exception": exc.__class__.__name__},
        )
        return _finish_with_error(
            correlation_id=correlation_id,
            tool_name=tool_name,
            user=user,
            total_start=total_start,
            request_payload=enriched_request_payload,
            error_payload=_error_payload_from_exception(exc),
        )

    _log_tool_phase(
        correlation_id=correlation_id,
        tool_name=tool_name,
        phase="operation_execution",
        status="ok",
        elapsed_seconds=time.perf_counter() - operation_start,
    )
    response_payload["correlation_id"] = correlation_id
    _log_tool_phase(
        correlation_id=correlation_id,
        tool_name=tool_name,
        phase="total",
        status="ok",
        elapsed_seconds=time.perf_counter() - total_start,
    )
    audit_logger.log_operation_event(
        operation=tool_name,
        user=user,
        status="success",
        request_payload=enriched_request_payload,
        response_payload=response_payload,
    )
    return response_payload


# Project lifecycle


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def projects_list(user: UserParam) -> dict[str, Any]:
    """List project ids and the caller's active project."""
    return _run_tool(
        "projects_list",
        READ_CAPABILITY,
        user,
        {"user": user},
        lambda service: _success(service.list_projects(user)),
    )


@_register_tool(WRITE_TOOL_ANNOTATIONS)
def projects_create(
    user: UserParam,
    id: Annotated[str, Field(min_length=1, max_length=64, description="Project id")],
    description: Annotated[str, Field(max_length=1000, description="Project description")] = "",
    summary: Annotated[str, Field(max_length=200, description="One-line summary")] = "",
    dependencies: Annotated[
        dict[str, str] | None, Field(description="Dependency name to version")
    ] = None,
    files: Annotated[
        list[dict[str, str]] | None,
        Field(description="Declared files as [{'role': ..., 'path': ...}]"),
    ] = None,
    git: Annotated[
        dict[str, Any] | None,
        Field(
            description=(
                "Git settings: {'user': {'name', 'email'}, 'remotes': {name: {'url'}}}. "
                "An 'origin' remote is cloned."
            )
        ),
    ] = None,
    credential_secret: Annotated[str | None, Field(description="Credential secret")] = None,
) -> dict[str, Any]:
    """Create a project directory, cloning when an origin remote is given."""
    request_payload = {
        "user": user,
        "id": id,
        "description": description,
        "summary": summary,
        "dependencies": dependencies or {},
        "files": files or [],
        "git": git or {},
        "credential_secret": credential_secret,
    }

    def _operation(service: ProjectsEngine) -> dict[str, Any]:
        request = CreateProjectRequest(
            id=id,
            description=description,
            summary=summary,
            dependencies=dependencies or {},
            files=files or [],
            git=git or {},
            credential_secret=credential_secret,
        )
        return _success(service.create_project(user, request))

    return _run_tool("projects_create", WRITE_CAPABILITY, user, request_payload, _operation)


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def projects_get(user: UserParam, id: Annotated[str, Field(description="Project id")]) -> dict[str, Any]:
    """Describe one project."""

    def _operation(service: ProjectsEngine) -> dict[str, Any]:
        project = service.get_project(user, id)
        if project is None:
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                f"Project '{id}' not found",
                "Use projects_list to see existing projects.",
            )
        return _success(project)

    return _run_tool("projects_get", READ_CAPABILITY, user, {"user": user, "id": id}, _operation)


@_register_tool(WRITE_TOOL_ANNOTATIONS)
def projects_update(
    user: UserParam,
    id: Annotated[str, Field(description="Project id")],
    active: Annotated[bool, Field(description="Make this the active project")] = False,
    initialise: Annotated[bool, Field(description="Initialise the repository")] = False,
    description: Annotated[str | None, Field(description="New description")] = None,
    summary: Annotated[str | None, Field(description="New summary")] = None,
    dependencies: Annotated[dict[str, str] | None, Field(description="Replacement dependencies")] = None,
    files: Annotated[list[dict[str, str]] | None, Field(description="Replacement declared files")] = None,
    git: Annotated[dict[str, Any] | None, Field(description="Git user and remotes to apply")] = None,
    credential_secret: Annotated[str | None, Field(description="New credential secret")] = None,
    current_credential_secret: Annotated[
        str | None, Field(description="Existing credential secret, required to change it")
    ] = None,
) -> dict[str, Any]:
    """Apply exactly one update: activate, initialise, or metadata fields."""
    body: dict[str, Any] = {}
    if active:
        body["active"] = True
    if initialise:
        body["initialise"] = True
    for key, value in (
        ("description", description),
        ("summary", summary),
        ("dependencies", dependencies),
        ("files", files),
        ("git", git),
        ("credential_secret", credential_secret),
        ("current_credential_secret", current_credential_secret),
    ):
        if value is not None:
            body[key] = value

    def _operation(service: ProjectsEngine) -> dict[str, Any]:
        request = ProjectUpdateRequest.from_body(body)
        return _success(service.update_project(user, id, request))

    return _run_tool("projects_update", WRITE_CAPABILITY, user, {"user": user, "id": id, **body}, _operation)


@_register_tool(DESTRUCTIVE_WRITE_TOOL_ANNOTATIONS)
def projects_delete(user: UserParam, id: Annotated[str, Field(description="Project id")]) -> dict[str, Any]:
    """Delete a project and its working tree."""
    return _run_tool(
        "projects_delete",
        WRITE_CAPABILITY,
        user,
        {"user": user, "id": id},
        lambda service: _success(service.delete_project(user, id)),
    )


@_register_tool(WRITE_TOOL_ANNOTATIONS)
def projects_end_session(user: UserParam) -> dict[str, Any]:
    """Forget the caller's active project."""
    return _run_tool(
        "projects_end_session",
        WRITE_CAPABILITY,
        user,
        {"user": user},
        lambda service: _success(service.end_session(user)),
    )


# Workspace


@_register_tool(NETWORK_TOOL_ANNOTATIONS)
def projects_status(
    user: UserParam,
    project_id: ProjectParam = None,
    remote: Annotated[bool, Field(description="Fetch upstream and report ahead/behind")] = False,
) -> dict[str, Any]:
    """Report branch, head, staged/unstaged/untracked/conflicted paths and merge state.

    With remote=true the upstream is fetched first, which contacts the network and
    updates remote-tracking refs, so that variant needs the write capability.
    """
    return _run_tool(
        "projects_status",
        WRITE_CAPABILITY if remote else READ_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "remote": remote},
        lambda service: _success(service.get_status(user, project_id, remote=remote)),
    )


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def projects_files(user: UserParam, project_id: ProjectParam = None) -> dict[str, Any]:
    """List tracked and untracked files with their state."""

    def _operation(service: ProjectsEngine) -> dict[str, Any]:
        entries = service.get_files(user, project_id)
        return {
            "status": "success",
            "files": [entry.model_dump(mode="json") for entry in entries],
            "count": len(entries),
        }

    return _run_tool("projects_files", READ_CAPABILITY, user, {"user": user, "project_id": project_id}, _operation)


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def projects_file_get(
    user: UserParam,
    path: Annotated[str, Field(min_length=1, description="Repository-relative path")],
    tree: Annotated[str, Field(description="'_' working tree, 'index', or a commit")] = "_",
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Read a file from the working tree, the index or a commit."""
    return _run_tool(
        "projects_file_get",
        READ_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "path": path, "tree": tree},
        lambda service: {
            "status": "success",
            "path": path,
            "tree": tree,
            "content": service.get_file(user, project_id, tree, path),
        },
    )


@_register_tool(DESTRUCTIVE_WRITE_TOOL_ANNOTATIONS)
def projects_file_revert(
    user: UserParam,
    path: Annotated[str, Field(min_length=1, description="Repository-relative path")],
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Discard working-tree changes to one path."""
    return _run_tool(
        "projects_file_revert",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "path": path},
        lambda service: _success(service.revert_file(user, project_id, path)),
    )


@_register_tool(WRITE_TOOL_ANNOTATIONS)
def projects_stage(
    user: UserParam,
    paths: Annotated[list[str], Field(min_length=1, description="Repository-relative paths")],
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Stage paths, including deletions."""
    return _run_tool(
        "projects_stage",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "paths": paths},
        lambda service: _success(service.stage_file(user, project_id, paths)),
    )


@_register_tool(WRITE_TOOL_ANNOTATIONS)
def projects_unstage(
    user: UserParam,
    path: Annotated[str | None, Field(description="Path to unstage; all when omitted")] = None,
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Remove a path, or everything, from the index."""
    return _run_tool(
        "projects_unstage",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "path": path},
        lambda service: _success(service.unstage_file(user, project_id, path)),
    )


@_register_tool(WRITE_TOOL_ANNOTATIONS)
def projects_commit(
    user: UserParam,
    message: Annotated[str, Field(min_length=1, max_length=5000, description="Commit message")],
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Commit staged changes, concluding a merge when one is pending."""
    return _run_tool(
        "projects_commit",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "message": message},
        lambda service: _success(service.commit(user, project_id, CommitRequest(message=message))),
    )


# History


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def projects_commits(
    user: UserParam,
    limit: Annotated[int, Field(ge=1, le=500, description="Page size")] = 20,
    before: Annotated[
        str | None, Field(description="Return commits that come after this sha in history order")
    ] = None,
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Page through history, newest first."""
    return _run_tool(
        "projects_commits",
        READ_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "limit": limit, "before": before},
        lambda service: _success(
            service.get_commits(user, project_id, CommitsRequest(limit=limit, before=before))
        ),
    )


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def projects_commit_get(
    user: UserParam,
    sha: Annotated[str, Field(min_length=4, description="Commit sha")],
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Show one commit with changed paths and patch."""
    return _run_tool(
        "projects_commit_get",
        READ_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "sha": sha},
        lambda service: _success(service.get_commit(user, project_id, sha)),
    )


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def projects_diff(
    user: UserParam,
    path: Annotated[str, Field(min_length=1, description="Repository-relative path")],
    type: Annotated[str, Field(description="unstaged, staged or commit")] = "unstaged",
    sha: Annotated[str | None, Field(description="Commit for type=commit (default HEAD)")] = None,
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Return a unified diff for one path."""
    return _run_tool(
        "projects_diff",
        READ_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "path": path, "type": type, "sha": sha},
        lambda service: {
            "status": "success",
            "path": path,
            "type": type,
            "diff": service.get_file_diff(user, project_id, type, path, sha),
        },
    )


# Branches


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def projects_branches(
    user: UserParam,
    remote: Annotated[bool, Field(description="List remote-tracking branches")] = False,
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """List local or remote-tracking branches."""

    def _operation(service: ProjectsEngine) -> dict[str, Any]:
        branches = service.get_branches(user, project_id, remote=remote)
        return {
            "status": "success",
            "branches": [branch.model_dump(mode="json") for branch in branches],
            "count": len(branches),
        }

    return _run_tool(
        "projects_branches",
        READ_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "remote": remote},
        _operation,
    )


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def projects_branch_status(
    user: UserParam,
    name: Annotated[str, Field(min_length=1, description="Local branch or remote ref like origin/main")],
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Return ahead/behind counts for a branch against its remote counterpart."""
    return _run_tool(
        "projects_branch_status",
        READ_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "name": name},
        lambda service: _success(service.get_branch_status(user, project_id, name)),
    )


@_register_tool(WRITE_TOOL_ANNOTATIONS)
def projects_branch_set(
    user: UserParam,
    name: Annotated[str, Field(min_length=1, max_length=200, description="Branch name")],
    create: Annotated[bool, Field(description="Create from HEAD when absent")] = False,
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Switch the working tree to a branch."""
    return _run_tool(
        "projects_branch_set",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "name": name, "create": create},
        lambda service: _success(
            service.set_branch(user, project_id, BranchRequest(name=name, create=create))
        ),
    )


@_register_tool(DESTRUCTIVE_WRITE_TOOL_ANNOTATIONS)
def projects_branch_delete(
    user: UserParam,
    name: Annotated[str, Field(min_length=1, description="Branch name")],
    force: Annotated[bool, Field(description="Delete even when unmerged")] = False,
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Delete a local branch."""
    return _run_tool(
        "projects_branch_delete",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "name": name, "force": force},
        lambda service: _success(service.delete_branch(user, project_id, name, force=force)),
    )


# Merge


@_register_tool(WRITE_TOOL_ANNOTATIONS)
def projects_merge_resolve(
    user: UserParam,
    path: Annotated[str, Field(min_length=1, description="Conflicted path")],
    resolution: Annotated[str, Field(description="ours, theirs or manual")],
    content: Annotated[str | None, Field(description="Resolved content for manual resolution")] = None,
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Resolve one conflicted path of the merge in progress."""

    def _operation(service: ProjectsEngine) -> dict[str, Any]:
        request = ResolveRequest(path=path, resolution=resolution, content=content)
        state = service.resolve_merge(user, project_id, request)
        return {"status": "success", "message": f"Resolved {path}", "merge_state": state.model_dump(mode="json")}

    return _run_tool(
        "projects_merge_resolve",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "path": path, "resolution": resolution, "content": content},
        _operation,
    )


@_register_tool(DESTRUCTIVE_WRITE_TOOL_ANNOTATIONS)
def projects_merge_abort(user: UserParam, project_id: ProjectParam = None) -> dict[str, Any]:
    """Abort the merge in progress and restore the pre-merge tree."""
    return _run_tool(
        "projects_merge_abort",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id},
        lambda service: _success(service.abort_merge(user, project_id)),
    )


# Remotes


@_register_tool(READ_ONLY_TOOL_ANNOTATIONS)
def projects_remotes(user: UserParam, project_id: ProjectParam = None) -> dict[str, Any]:
    """List configured remotes."""
    return _run_tool(
        "projects_remotes",
        READ_CAPABILITY,
        user,
        {"user": user, "project_id": project_id},
        lambda service: {
            "status": "success",
            "remotes": [remote.model_dump(mode="json") for remote in service.get_remotes(user, project_id)],
        },
    )


@_register_tool(WRITE_TOOL_ANNOTATIONS)
def projects_remote_add(
    user: UserParam,
    name: Annotated[str, Field(min_length=1, max_length=100, description="Remote name")],
    url: Annotated[str, Field(min_length=1, description="Remote URL without credentials")],
    push_url: Annotated[str | None, Field(description="Separate push URL")] = None,
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Add a remote."""
    return _run_tool(
        "projects_remote_add",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "name": name, "url": url, "push_url": push_url},
        lambda service: {
            "status": "success",
            "remote": service.add_remote(
                user, project_id, RemoteSpec(name=name, url=url, push_url=push_url)
            ).model_dump(mode="json"),
        },
    )


@_register_tool(WRITE_TOOL_ANNOTATIONS)
def projects_remote_update(
    user: UserParam,
    name: Annotated[str, Field(min_length=1, max_length=100, description="Remote name")],
    url: Annotated[str | None, Field(description="New fetch URL")] = None,
    push_url: Annotated[str | None, Field(description="New push URL")] = None,
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Change a remote's fetch or push URL."""
    return _run_tool(
        "projects_remote_update",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "name": name, "url": url, "push_url": push_url},
        lambda service: {
            "status": "success",
            "remote": service.update_remote(
                user, project_id, RemoteSpec(name=name, url=url, push_url=push_url)
            ).model_dump(mode="json"),
        },
    )


@_register_tool(DESTRUCTIVE_WRITE_TOOL_ANNOTATIONS)
def projects_remote_remove(
    user: UserParam,
    name: Annotated[str, Field(min_length=1, description="Remote name")],
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Remove a remote."""
    return _run_tool(
        "projects_remote_remove",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "name": name},
        lambda service: _success(service.remove_remote(user, project_id, name)),
    )


@_register_tool(NETWORK_TOOL_ANNOTATIONS)
def projects_push(
    user: UserParam,
    remote: Annotated[str | None, Field(description="Remote or remote/branch")] = None,
    refspec: Annotated[str | None, Field(description="Explicit refspec; a leading '+' forces")] = None,
    track: Annotated[bool, Field(description="Set the pushed branch as upstream")] = False,
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Push the current branch."""
    return _run_tool(
        "projects_push",
        WRITE_CAPABILITY,
        user,
        {"user": user, "project_id": project_id, "remote": remote, "refspec": refspec, "track": track},
        lambda service: _success(
            service.push(user, project_id, PushRequest(remote=remote, refspec=refspec, track=track))
        ),
    )


@_register_tool(NETWORK_TOOL_ANNOTATIONS)
def projects_pull(
    user: UserParam,
    remote: Annotated[str | None, Field(description="Remote or remote/branch")] = None,
    refspec: Annotated[str | None, Field(description="Remote branch to pull")] = None,
    track: Annotated[bool, Field(description="Set the pulled branch as upstream")] = False,
    allow_unrelated_histories: Annotated[
        bool, Field(description="Merge even when histories share no ancestor")
    ] = False,
    project_id: ProjectParam = None,
) -> dict[str, Any]:
    """Fetch and integrate a remote branch: fast-forward, merge, or report conflicts."""
    request_payload = {
        "user": user,
        "project_id": project_id,
        "remote": remote,
        "refspec": refspec,
        "track": track,
        "allow_unrelated_histories": allow_unrelated_histories,
    }

    def _operation(service: ProjectsEngine) -> dict[str, Any]:
        request = PullRequest(
            remote=remote,
            refspec=refspec,
            track=track,
            allow_unrelated_histories=allow_unrelated_histories,
        )
        return _success(service.pull(user, project_id, request))

    return _run_tool("projects_pull", WRITE_CAPABILITY, user, request_payload, _operation)


def main() -> None:
    """Run the projects MCP server in stdio or streamable HTTP mode."""
    parser = argparse.ArgumentParser(description="Projects version-control MCP server")
    try:
        transport_default, host_default, port_default = get_runtime_defaults()
        allow_public_http_default = get_allow_public_http_default()
        engine_defaults = get_runtime_engine_defaults()
        audit_defaults = get_runtime_audit_defaults()
    except ValueError as exc:
        parser.error(str(exc))
    parser.add_argument(
        "--transport",
        choices=["stdio", "streamable-http"],
        default=transport_default,
        help="Server transport mode (default: stdio).",
    )
    parser.add_argument("--host", default=host_default, help="Host for streamable HTTP transport.")
    parser.add_argument("--port", type=int, default=port_default, help="Port for streamable HTTP transport.")
    parser.add_argument(
        "--allow-public-http",
        action=argparse.BooleanOptionalAction,
        default=allow_public_http_default,
        help="Allow non-loopback streamable-http host binding.",
    )
    parser.add_argument(
        "--root",
        default=str(engine_defaults.root),
        help="Directory holding all projects (default: PROJECTS_VCS_ROOT).",
    )
    parser.add_argument(
        "--audit-log-file",
        default=audit_defaults.audit_log_path,
        help="Optional JSONL audit log path for tool calls.",
    )
    parser.add_argument(
        "--audit-redact-sensitive",
        action=argparse.BooleanOptionalAction,
        default=audit_defaults.audit_redact_sensitive,
        help="Redact sensitive-looking fields in audit logs (default: enabled).",
    )
    parser.add_argument(
        "--audit-max-field-chars",
        type=int,
        default=audit_defaults.audit_max_field_chars,
        help="Max characters for each string field written to audit logs.",
    )
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate runtime settings and exit without starting server transport.",
    )
    args = parser.parse_args()

    try:
        validate_streamable_http_binding(
            transport=args.transport,
            host=args.host,
            allow_public_http=args.allow_public_http,
        )
        validate_audit_max_field_chars(int(args.audit_max_field_chars))
    except ValueError as exc:
        parser.error(str(exc))

    global audit_logger
    global engine
    global engine_settings
    engine_settings = RuntimeEngineDefaults(
        root=Path(args.root).expanduser(),
        enabled=engine_defaults.enabled,
        default_branch=engine_defaults.default_branch,
        network_timeout_seconds=engine_defaults.network_timeout_seconds,
        capabilities=engine_defaults.capabilities,
    )
    engine = None
    audit_path = str(args.audit_log_file).strip()
    audit_logger = AuditLogger(
        log_path=Path(audit_path) if audit_path else None,
        redact_sensitive=bool(args.audit_redact_sensitive),
        max_field_chars=int(args.audit_max_field_chars),
    )

    if args.check_config:
        print("Configuration is valid.")
        return

    mcp.settings.host = args.host
    mcp.settings.port = int(args.port)
    if args.transport == "stdio":
        mcp.run()
        return
    mcp.run(transport="streamable-http")


if __name__ == "__main__":
    main()
