"""Command line interface for the projects engine with parity to MCP tools."""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

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
from .runtime import RuntimeEngineDefaults, ensure_operation_allowed, get_runtime_engine_defaults

READ_COMMANDS = {
    "list",
    "get",
    "status",
    "files",
    "file-get",
    "diff",
    "log",
    "show",
    "branches",
    "branch-status",
    "remotes",
}


def _pairs(values: list[str] | None, option: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                f"{option} expects key=value, got {item!r}",
                f"Use {option} name=value.",
            )
        pairs[key.strip()] = value.strip()
    return pairs


def _success(result: BaseModel | dict[str, Any], **extra: Any) -> dict[str, Any]:
    payload = result.model_dump(mode="json") if isinstance(result, BaseModel) else dict(result)
    payload.setdefault("status", "success")
    payload.update(extra)
    return payload


def _print_payload(payload: dict[str, Any], as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, indent=2))
        return

    status = str(payload.get("status", "unknown")).upper()
    message = payload.get("message", "")
    print(f"[{status}] {message}".rstrip())

    if payload.get("status") == "error":
        error_code = payload.get("error_code", "")
        suggestion = payload.get("suggestion", "")
        if error_code:
            print(f"error_code: {error_code}")
        if suggestion:
            print(f"suggestion: {suggestion}")
        return

    for key in ("id", "branch", "head", "sha", "result", "remote_ref", "remote", "upstream", "ahead", "behind"):
        if key in payload and payload[key] not in ("", None):
            print(f"{key}: {payload[key]}")

    for key in ("staged", "unstaged", "untracked", "conflicted"):
        if payload.get(key):
            print(f"{key}:")
            for path in payload[key]:
                print(f"  {path}")

    if "projects" in payload:
        for name in payload["projects"]:
            marker = "*" if name == payload.get("active") else "-"
            print(f"{marker} {name}")
    if "files" in payload and isinstance(payload["files"], list):
        for entry in payload["files"]:
            if isinstance(entry, dict) and "status" in entry:
                print(f"{entry['status']:>10} {entry['path']}")
    if "commits" in payload:
        for commit in payload["commits"]:
            print(f"{commit.get('short_sha', '')} {commit.get('title', '')}")
    if "branches" in payload:
        for branch in payload["branches"]:
            marker = "*" if branch.get("current") else "-"
            print(f"{marker} {branch.get('name')} {branch.get('commit') or ''}".rstrip())
    if "remotes" in payload:
        for remote in payload["remotes"]:
            print(f"{remote.get('name')}\t{remote.get('url')}")
    if "content" in payload:
        print(payload["content"], end="")
    if "diff" in payload:
        print(payload["diff"], end="")


def _error_payload(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, ProjectsError):
        return exc.to_payload()
    if isinstance(exc, ValidationError):
        return {
            "status": "error",
            "error_code": ErrorCode.VALIDATION_ERROR.value,
            "message": "Input validation failed",
            "suggestion": "Check command arguments and constraints.",
            "details": {"errors": json.loads(exc.json(include_url=False))},
        }
    logging.getLogger(__name__).exception("Unhandled CLI exception", exc_info=exc)
    return {
        "status": "error",
        "error_code": ErrorCode.UNEXPECTED_ERROR.value,
        "message": str(exc),
        "suggestion": "Retry with --json for diagnostics and inspect logs.",
        "details": {},
    }


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--root", default="", help="Projects root (default: PROJECTS_VCS_ROOT)")
    common.add_argument("--user", default="", help="Caller identity (default: login name)")
    common.add_argument("--json", action="store_true", help="Output machine-readable JSON")

    scoped = argparse.ArgumentParser(add_help=False, parents=[common])
    scoped.add_argument("-p", "--project", required=True, help="Project id")

    parser = argparse.ArgumentParser(prog="projects-vcs-cli", description="Project version-control CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", parents=[common], help="List projects")

    create = subparsers.add_parser("create", parents=[common], help="Create a project")
    create.add_argument("id", help="Project id")
    create.add_argument("--description", default="", help="Project description")
    create.add_argument("--summary", default="", help="One-line summary")
    create.add_argument("--dependency", action="append", help="Dependency as name=version (repeatable)")
    create.add_argument("--file", action="append", help="Declared file as role=path (repeatable)")
    create.add_argument("--git-user-name", default="", help="Commit author name")
    create.add_argument("--git-user-email", default="", help="Commit author email")
    create.add_argument("--remote", action="append", help="Remote as name=url; origin is cloned")
    create.add_argument("--credential-secret", default=None, help="Credential secret")

    get = subparsers.add_parser("get", parents=[common], help="Show one project")
    get.add_argument("id", help="Project id")

    update = subparsers.add_parser("update", parents=[common], help="Update a project")
    update.add_argument("id", help="Project id")
    update.add_argument("--active", action="store_true", help="Make this the active project")
    update.add_argument("--initialise", action="store_true", help="Initialise the repository")
    update.add_argument("--description", default=None, help="New description")
    update.add_argument("--summary", default=None, help="New summary")
    update.add_argument("--dependency", action="append", help="Replace dependencies (name=version)")
    update.add_argument("--file", action="append", help="Replace declared files (role=path)")
    update.add_argument("--git-user-name", default=None, help="Commit author name")
    update.add_argument("--git-user-email", default=None, help="Commit author email")
    update.add_argument("--remote", action="append", help="Add or update remote (name=url)")
    update.add_argument("--credential-secret", default=None, help="New credential secret")
    update.add_argument("--current-credential-secret", default=None, help="Existing credential secret")

    delete = subparsers.add_parser("delete", parents=[common], help="Delete a project")
    delete.add_argument("id", help="Project id")

    status = subparsers.add_parser("status", parents=[scoped], help="Show workspace status")
    status.add_argument("--remote", action="store_true", help="Fetch upstream and report ahead/behind")

    subparsers.add_parser("files", parents=[scoped], help="List files and their states")

    file_get = subparsers.add_parser("file-get", parents=[scoped], help="Print file content")
    file_get.add_argument("path", help="Repository-relative path")
    file_get.add_argument("--tree", default="_", help="'_' working tree, 'index', or a commit")

    revert = subparsers.add_parser("revert", parents=[scoped], help="Discard working-tree changes")
    revert.add_argument("path", help="Repository-relative path")

    stage = subparsers.add_parser("stage", parents=[scoped], help="Stage paths")
    stage.add_argument("paths", nargs="+", help="Repository-relative paths")

    unstage = subparsers.add_parser("unstage", parents=[scoped], help="Unstage a path or everything")
    unstage.add_argument("path", nargs="?", help="Repository-relative path (default: all)")

    commit = subparsers.add_parser("commit", parents=[scoped], help="Commit staged changes")
    commit.add_argument("-m", "--message", required=True, help="Commit message")

    diff = subparsers.add_parser("diff", parents=[scoped], help="Show a file diff")
    diff.add_argument("path", help="Repository-relative path")
    diff.add_argument("--type", choices=["unstaged", "staged", "commit"], default="unstaged")
    diff.add_argument("--sha", default=None, help="Commit for --type commit (default: HEAD)")

    log = subparsers.add_parser("log", parents=[scoped], help="List commits")
    log.add_argument("-n", "--limit", type=int, default=20, help="Limit number of commits")
    log.add_argument("--before", default=None, help="Return commits after this sha (exclusive)")

    show = subparsers.add_parser("show", parents=[scoped], help="Show one commit")
    show.add_argument("sha", help="Commit sha")

    push = subparsers.add_parser("push", parents=[scoped], help="Push the current branch")
    push.add_argument("--remote", default=None, help="Remote or remote/branch")
    push.add_argument("--refspec", default=None, help="Explicit refspec; '+' forces")
    push.add_argument("--track", action="store_true", help="Set upstream")

    pull = subparsers.add_parser("pull", parents=[scoped], help="Pull into the current branch")
    pull.add_argument("--remote", default=None, help="Remote or remote/branch")
    pull.add_argument("--refspec", default=None, help="Remote branch to pull")
    pull.add_argument("--track", action="store_true", help="Set upstream")
    pull.add_argument("--allow-unrelated-histories", action="store_true", help="Merge unrelated history")

    subparsers.add_parser("merge-abort", parents=[scoped], help="Abort the merge in progress")

    resolve = subparsers.add_parser("merge-resolve", parents=[scoped], help="Resolve one conflicted path")
    resolve.add_argument("path", help="Conflicted path")
    resolve.add_argument("--resolution", choices=["ours", "theirs", "manual"], required=True)
    resolve.add_argument("--content-file", default=None, help="File whose content resolves the path")

    branches = subparsers.add_parser("branches", parents=[scoped], help="List branches")
    branches.add_argument("--remote", action="store_true", help="List remote-tracking branches")

    branch_status = subparsers.add_parser("branch-status", parents=[scoped], help="Ahead/behind counts")
    branch_status.add_argument("name", help="Local branch or remote ref such as origin/main")

    branch_set = subparsers.add_parser("branch-set", parents=[scoped], help="Switch branch")
    branch_set.add_argument("name", help="Branch name")
    branch_set.add_argument("--create", action="store_true", help="Create from HEAD when absent")

    branch_delete = subparsers.add_parser("branch-delete", parents=[scoped], help="Delete a branch")
    branch_delete.add_argument("name", help="Branch name")
    branch_delete.add_argument("--force", action="store_true", help="Delete even if unmerged")

    subparsers.add_parser("remotes", parents=[scoped], help="List remotes")

    remote_add = subparsers.add_parser("remote-add", parents=[scoped], help="Add a remote")
    remote_add.add_argument("name", help="Remote name")
    remote_add.add_argument("url", help="Remote URL")
    remote_add.add_argument("--push-url", default=None, help="Separate push URL")

    remote_update = subparsers.add_parser("remote-update", parents=[scoped], help="Change remote URLs")
    remote_update.add_argument("name", help="Remote name")
    remote_update.add_argument("--url", default=None, help="New fetch URL")
    remote_update.add_argument("--push-url", default=None, help="New push URL")

    remote_remove = subparsers.add_parser("remote-remove", parents=[scoped], help="Remove a remote")
    remote_remove.add_argument("name", help="Remote name")

    return parser


def _git_settings(args: argparse.Namespace) -> dict[str, Any] | None:
    settings: dict[str, Any] = {}
    if args.git_user_name or args.git_user_email:
        settings["user"] = {"name": args.git_user_name or "", "email": args.git_user_email or ""}
    remotes = _pairs(args.remote, "--remote")
    if remotes:
        settings["remotes"] = {name: {"url": url} for name, url in remotes.items()}
    return settings or None


def _files(values: list[str] | None) -> list[dict[str, str]]:
    return [{"role": role, "path": path} for role, path in _pairs(values, "--file").items()]


def _update_body(args: argparse.Namespace) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if args.active:
        body["active"] = True
    if args.initialise:
        body["initialise"] = True
    if args.description is not None:
        body["description"] = args.description
    if args.summary is not None:
        body["summary"] = args.summary
    if args.dependency:
        body["dependencies"] = _pairs(args.dependency, "--dependency")
    if args.file:
        body["files"] = _files(args.file)
    git_settings = _git_settings(args)
    if git_settings:
        body["git"] = git_settings
    if args.credential_secret is not None:
        body["credential_secret"] = args.credential_secret
    if args.current_credential_secret is not None:
        body["current_credential_secret"] = args.current_credential_secret
    return body


def _required_capability(args: argparse.Namespace) -> str:
    # status --remote fetches, which updates remote-tracking refs.
    if args.command == "status" and args.remote:
        return WRITE_CAPABILITY
    return READ_CAPABILITY if args.command in READ_COMMANDS else WRITE_CAPABILITY


def _dispatch(engine: ProjectsEngine, user: str, args: argparse.Namespace) -> dict[str, Any]:
    command = args.command
    project = getattr(args, "project", None)

    if command == "list":
        return _success(engine.list_projects(user))
    if command == "create":
        request = CreateProjectRequest(
            id=args.id,
            description=args.description,
            summary=args.summary,
            dependencies=_pairs(args.dependency, "--dependency"),
            files=_files(args.file),
            git=_git_settings(args) or {},
            credential_secret=args.credential_secret,
        )
        return _success(engine.create_project(user, request), message=f"Project '{args.id}' created")
    if command == "get":
        found = engine.get_project(user, args.id)
        if found is None:
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                f"Project '{args.id}' not found",
                "List projects with `projects-vcs-cli list`.",
            )
        return _success(found)
    if command == "update":
        request = ProjectUpdateRequest.from_body(_update_body(args))
        return _success(engine.update_project(user, args.id, request), message=f"Project '{args.id}' updated")
    if command == "delete":
        return _success(engine.delete_project(user, args.id))
    if command == "status":
        return _success(engine.get_status(user, project, remote=args.remote))
    if command == "files":
        files = engine.get_files(user, project)
        return _success({"files": [item.model_dump(mode="json") for item in files], "count": len(files)})
    if command == "file-get":
        content = engine.get_file(user, project, args.tree, args.path)
        return _success({"path": args.path, "tree": args.tree, "content": content})
    if command == "revert":
        return _success(engine.revert_file(user, project, args.path))
    if command == "stage":
        return _success(engine.stage_file(user, project, list(args.paths)))
    if command == "unstage":
        return _success(engine.unstage_file(user, project, args.path))
    if command == "commit":
        return _success(engine.commit(user, project, CommitRequest(message=args.message)))
    if command == "diff":
        diff = engine.get_file_diff(user, project, args.type, args.path, args.sha)
        return _success({"path": args.path, "type": args.type, "diff": diff})
    if command == "log":
        return _success(engine.get_commits(user, project, CommitsRequest(limit=args.limit, before=args.before)))
    if command == "show":
        return _success(engine.get_commit(user, project, args.sha))
    if command == "push":
        request = PushRequest(remote=args.remote, refspec=args.refspec, track=args.track)
        return _success(engine.push(user, project, request))
    if command == "pull":
        request = PullRequest(
            remote=args.remote,
            refspec=args.refspec,
            track=args.track,
            allow_unrelated_histories=args.allow_unrelated_histories,
        )
        return _success(engine.pull(user, project, request))
    if command == "merge-abort":
        return _success(engine.abort_merge(user, project))
    if command == "merge-resolve":
        content = None
        if args.content_file:
            content = Path(args.content_file).read_text(encoding="utf-8")
        request = ResolveRequest(path=args.path, resolution=args.resolution, content=content)
        state = engine.resolve_merge(user, project, request)
        return _success({"message": f"Resolved {args.path}", "merge_state": state.model_dump(mode="json")})
    if command == "branches":
        branches = engine.get_branches(user, project, remote=args.remote)
        return _success({"branches": [item.model_dump(mode="json") for item in branches], "count": len(branches)})
    if command == "branch-status":
        return _success(engine.get_branch_status(user, project, args.name))
    if command == "branch-set":
        branch = engine.set_branch(user, project, BranchRequest(name=args.name, create=args.create))
        return _success({"message": f"Switched to {branch.name}", "branch": branch.name})
    if command == "branch-delete":
        return _success(engine.delete_branch(user, project, args.name, force=args.force))
    if command == "remotes":
        remotes = engine.get_remotes(user, project)
        return _success({"remotes": [item.model_dump(mode="json") for item in remotes]})
    if command == "remote-add":
        remote = engine.add_remote(user, project, RemoteSpec(name=args.name, url=args.url, push_url=args.push_url))
        return _success({"message": f"Remote '{remote.name}' added", "remote": remote.model_dump(mode="json")})
    if command == "remote-update":
        remote = engine.update_remote(
            user, project, RemoteSpec(name=args.name, url=args.url, push_url=args.push_url)
        )
        return _success({"message": f"Remote '{remote.name}' updated", "remote": remote.model_dump(mode="json")})
    return _success(engine.remove_remote(user, project, args.name))


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    as_json = bool(getattr(args, "json", False))

    try:
        defaults = get_runtime_engine_defaults()
    except ValueError as exc:
        parser.error(str(exc))
    root = Path(args.root).expanduser() if args.root else defaults.root
    settings = RuntimeEngineDefaults(
        root=root,
        enabled=defaults.enabled,
        default_branch=defaults.default_branch,
        network_timeout_seconds=defaults.network_timeout_seconds,
        capabilities=defaults.capabilities,
    )
    user = args.user or getpass.getuser()

    try:
        capability = _required_capability(args)
        ensure_operation_allowed(settings, capability)
        engine = ProjectsEngine(
            settings.root,
            default_branch=settings.default_branch,
            network_timeout=settings.network_timeout_seconds,
        )
        response = _dispatch(engine, user, args)
        _print_payload(response, as_json=as_json)
        return 0
    except Exception as exc:  # noqa: BLE001
        payload = _error_payload(exc)
        _print_payload(payload, as_json=as_json)
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
