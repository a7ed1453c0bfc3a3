"""Remote configuration and push/pull orchestration."""

from __future__ import annotations

import logging

from .backend import GitBackend, backend_error, has_inline_credentials, scrub_credentials
from .branches import DIRTY_CHECKOUT_MARKERS, BranchManager
from .constants import DEFAULT_REMOTE
from .errors import ErrorCode, ProjectsError
from .merge import DIRTY_MERGE_MARKERS, MergeCoordinator
from .models import (
    PullRequest,
    PullResponse,
    PullResult,
    PushRequest,
    PushResponse,
    RemoteInfo,
    RemoteSpec,
    StatusResponse,
)
from .workspace import Workspace

logger = logging.getLogger(__name__)

NON_FAST_FORWARD_MARKERS = (
    "non-fast-forward",
    "fetch first",
    "[rejected]",
    "Updates were rejected",
)


def guard_remote_url(url: str, field_name: str = "url") -> str:
    """Reject remote URLs that embed credentials."""
    value = str(url or "").strip()
    if not value:
        raise ProjectsError(
            ErrorCode.VALIDATION_ERROR,
            f"{field_name} must not be empty",
            "Provide a remote URL.",
        )
    if has_inline_credentials(value):
        raise ProjectsError(
            ErrorCode.VALIDATION_ERROR,
            f"{field_name} must not embed credentials: {scrub_credentials(value)}",
            "Remove the user[:password]@ part and configure credentials separately.",
            {"field": field_name},
        )
    return value


class RemoteSync:
    """Remote CRUD plus push, pull and fetch for one project."""

    def __init__(
        self,
        workspace: Workspace,
        branches: BranchManager | None = None,
        merge: MergeCoordinator | None = None,
    ) -> None:
        self.workspace = workspace
        self.branches = branches or BranchManager(workspace)
        self.merge = merge or MergeCoordinator(workspace)

    @property
    def backend(self) -> GitBackend:
        return self.workspace.backend

    # Remote configuration

    def remote_names(self) -> list[str]:
        result = self.backend.run("remote")
        return sorted(line.strip() for line in result.stdout.splitlines() if line.strip())

    def get_remotes(self) -> list[RemoteInfo]:
        return [self._remote_info(name) for name in self.remote_names()]

    def add_remote(self, spec: RemoteSpec) -> RemoteInfo:
        url = guard_remote_url(spec.url or "")
        push_url = guard_remote_url(spec.push_url, "push_url") if spec.push_url else None
        if spec.name in self.remote_names():
            raise ProjectsError(
                ErrorCode.ALREADY_EXISTS,
                f"Remote '{spec.name}' already exists",
                "Use update_remote to change its URL.",
                {"remote": spec.name},
            )
        self.backend.run("remote", "add", "--", spec.name, url)
        if push_url:
            self.backend.run("remote", "set-url", "--push", "--", spec.name, push_url)
        logger.info("Added remote %s to project %s", spec.name, self.workspace.project_id)
        return self._remote_info(spec.name)

    def update_remote(self, spec: RemoteSpec) -> RemoteInfo:
        if spec.url is None and spec.push_url is None:
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                "Nothing to update",
                "Provide url and/or push_url.",
                {"remote": spec.name},
            )
        url = guard_remote_url(spec.url) if spec.url is not None else None
        push_url = guard_remote_url(spec.push_url, "push_url") if spec.push_url is not None else None
        self._require_remote(spec.name)
        if url is not None:
            self.backend.run("remote", "set-url", "--", spec.name, url)
        if push_url is not None:
            self.backend.run("remote", "set-url", "--push", "--", spec.name, push_url)
        logger.info("Updated remote %s in project %s", spec.name, self.workspace.project_id)
        return self._remote_info(spec.name)

    def remove_remote(self, name: str) -> None:
        self._require_remote(name)
        self.backend.run("remote", "remove", name)
        logger.info("Removed remote %s from project %s", name, self.workspace.project_id)

    # Network operations

    def fetch(self, remote: str, branch: str | None = None) -> None:
        self._require_remote(remote)
        args = ["fetch", "--quiet", "--prune", remote]
        if branch:
            args.append(f"+refs/heads/{branch}:refs/remotes/{remote}/{branch}")
        logger.info("Fetching %s for project %s", remote, self.workspace.project_id)
        result = self.backend.run_network(*args, check=False)
        if result.ok:
            return
        if branch and "couldn't find remote ref" in result.stderr:
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                f"Remote branch '{remote}/{branch}' not found",
                "Check the remote branch name.",
                {"remote_ref": f"{remote}/{branch}"},
            )
        raise backend_error(args, result)

    def status_with_remote(self, status: StatusResponse) -> StatusResponse:
        """Fetch the current branch's upstream and fill in ahead/behind counts."""
        if not status.branch:
            return status
        upstream = self.branches.upstream_of(status.branch)
        if upstream is None:
            return status
        remote, _, remote_branch = upstream.partition("/")
        if remote not in self.remote_names():
            return status
        self.fetch(remote, remote_branch or None)
        branch_status = self.branches.get_branch_status(status.branch)
        return status.model_copy(
            update={
                "upstream": branch_status.remote,
                "ahead": branch_status.ahead,
                "behind": branch_status.behind,
            }
        )

    def push(self, request: PushRequest) -> PushResponse:
        branch = self._current_branch("push")
        if not self.backend.has_commits():
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                "Nothing to push",
                "Commit at least once before pushing.",
            )
        remote, remote_branch = self._target(request.remote, branch)

        if request.refspec:
            refspec = request.refspec.strip()
            destination = refspec.lstrip("+").rpartition(":")[2] or branch
            remote_branch = destination.removeprefix("refs/heads/")
        else:
            refspec = f"refs/heads/{branch}:refs/heads/{remote_branch}"

        args = ["push", "--porcelain"]
        if request.track:
            args.append("--set-upstream")
        args.extend([remote, refspec])

        logger.info(
            "Pushing %s to %s/%s for project %s",
            branch,
            remote,
            remote_branch,
            self.workspace.project_id,
        )
        result = self.backend.run_network(*args, check=False)
        if not result.ok:
            output = result.stderr + result.stdout
            if any(marker in output for marker in NON_FAST_FORWARD_MARKERS):
                raise ProjectsError(
                    ErrorCode.NON_FAST_FORWARD,
                    f"Push to {remote}/{remote_branch} was rejected as non-fast-forward",
                    "Pull and integrate remote changes first, or force with a '+' refspec.",
                    {"remote": remote, "branch": remote_branch, "stderr": scrub_credentials(output.strip())},
                )
            raise backend_error(args, result)

        return PushResponse(
            message=f"Pushed {branch} to {remote}/{remote_branch}",
            remote=remote,
            branch=remote_branch,
            tracking=request.track,
        )

    def pull(self, request: PullRequest) -> PullResponse:
        branch = self._current_branch("pull")
        if self.merge.in_progress():
            raise ProjectsError(
                ErrorCode.CONFLICT,
                "A merge is already in progress",
                "Resolve and commit, or abort the merge first.",
            )
        remote, remote_branch = self._target(request.remote, branch)
        if request.refspec:
            source = request.refspec.strip().lstrip("+").partition(":")[0]
            remote_branch = source.removeprefix("refs/heads/") or remote_branch

        self.fetch(remote, remote_branch)
        remote_ref = f"{remote}/{remote_branch}"
        merge_head = self.backend.resolve_commit(f"refs/remotes/{remote_ref}")
        if merge_head is None:
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                f"Remote branch '{remote_ref}' not found",
                "Check the remote branch name.",
                {"remote_ref": remote_ref},
            )

        response = self._integrate(branch, remote_ref, merge_head, request.allow_unrelated_histories)
        if request.track:
            self.backend.run("branch", f"--set-upstream-to={remote_ref}", branch)
        return response

    def _integrate(
        self, branch: str, remote_ref: str, merge_head: str, allow_unrelated: bool
    ) -> PullResponse:
        head = self.backend.head_sha()
        if head is None:
            self._fast_forward(["checkout", "-q", "-B", branch, merge_head], remote_ref)
            return self._fast_forward_response(remote_ref)

        if head == merge_head or self.backend.is_ancestor(merge_head, head):
            return PullResponse(
                message="Already up to date",
                result=PullResult.UP_TO_DATE,
                remote_ref=remote_ref,
                head=head,
            )

        if self.backend.is_ancestor(head, merge_head):
            self._fast_forward(["merge", "--ff-only", "-q", merge_head], remote_ref)
            logger.info("Fast-forwarded %s to %s in project %s", branch, remote_ref, self.workspace.project_id)
            return self._fast_forward_response(remote_ref)

        unrelated = self.backend.merge_base(head, merge_head) is None
        if unrelated and not allow_unrelated:
            raise ProjectsError(
                ErrorCode.UNRELATED_HISTORIES,
                f"{remote_ref} shares no history with {branch}",
                "Retry with allow_unrelated_histories=true to merge anyway.",
                {"remote_ref": remote_ref, "branch": branch},
            )
        return self.merge.begin_merge(remote_ref, merge_head, unrelated=unrelated)

    def _fast_forward(self, args: list[str], remote_ref: str) -> None:
        result = self.backend.run(*args, check=False)
        if result.ok:
            return
        output = result.stderr + result.stdout
        if any(marker in output for marker in DIRTY_MERGE_MARKERS + DIRTY_CHECKOUT_MARKERS):
            raise ProjectsError(
                ErrorCode.DIRTY_CHECKOUT,
                f"Local changes would be overwritten by updating to {remote_ref}",
                "Commit or revert local changes before pulling.",
                {"remote_ref": remote_ref, "stderr": output.strip()},
            )
        raise backend_error(args, result)

    def _fast_forward_response(self, remote_ref: str) -> PullResponse:
        return PullResponse(
            message=f"Fast-forwarded to {remote_ref}",
            result=PullResult.FAST_FORWARD,
            remote_ref=remote_ref,
            head=self.backend.head_sha() or "",
        )

    def _target(self, remote: str | None, branch: str) -> tuple[str, str]:
        """Resolve `name` or `name/branch` (or the upstream) into a remote and branch."""
        names = self.remote_names()
        value = str(remote or "").strip()
        if value:
            if value in names:
                upstream = self.branches.upstream_of(branch)
                if upstream and upstream.startswith(f"{value}/"):
                    return value, upstream[len(value) + 1 :]
                return value, branch
            name, _, remote_branch = value.partition("/")
            if name in names and remote_branch:
                return name, remote_branch
            raise self._unknown_remote(name or value)

        upstream = self.branches.upstream_of(branch)
        if upstream:
            name, _, remote_branch = upstream.partition("/")
            if name in names and remote_branch:
                return name, remote_branch
        if DEFAULT_REMOTE in names:
            return DEFAULT_REMOTE, branch
        raise self._unknown_remote(DEFAULT_REMOTE)

    def _current_branch(self, action: str) -> str:
        branch = self.backend.current_branch()
        if branch is None:
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                f"Cannot {action} with a detached HEAD",
                "Switch to a branch first.",
            )
        return branch

    def _require_remote(self, name: str) -> None:
        if name not in self.remote_names():
            raise self._unknown_remote(name)

    def _unknown_remote(self, name: str) -> ProjectsError:
        return ProjectsError(
            ErrorCode.NOT_FOUND,
            f"Remote '{name}' not found",
            "List remotes with get_remotes.",
            {"remote": name},
        )

    def _remote_info(self, name: str) -> RemoteInfo:
        url = self.backend.run("remote", "get-url", "--", name, check=False)
        push_url = self.backend.run("remote", "get-url", "--push", "--", name, check=False)
        fetch_refspec = self.backend.run("config", "--get", f"remote.{name}.fetch", check=False)
        push_refspec = self.backend.run("config", "--get", f"remote.{name}.push", check=False)
        return RemoteInfo(
            name=name,
            url=scrub_credentials(url.stdout.strip()),
            push_url=scrub_credentials(push_url.stdout.strip()),
            fetch_refspec=fetch_refspec.stdout.strip(),
            push_refspec=push_refspec.stdout.strip(),
        )
