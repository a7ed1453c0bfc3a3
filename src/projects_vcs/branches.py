"""Local and remote-tracking branch management."""

from __future__ import annotations

import logging
import re

from .backend import GitBackend, backend_error
from .errors import ErrorCode, ProjectsError
from .models import BranchInfo, BranchStatus
from .workspace import Workspace

logger = logging.getLogger(__name__)

DIRTY_CHECKOUT_MARKERS = (
    "would be overwritten by checkout",
    "Please commit your changes or stash them",
    "would be removed by checkout",
)

_BRANCH_FORMAT = "%(refname)%00%(objectname)%00%(upstream:short)%00%(HEAD)"


class BranchManager:
    """Branch listing, switching, deletion and ahead/behind comparisons."""

    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    @property
    def backend(self) -> GitBackend:
        return self.workspace.backend

    def get_branches(self, remote: bool = False) -> list[BranchInfo]:
        namespace = "refs/remotes" if remote else "refs/heads"
        result = self.backend.run("for-each-ref", f"--format={_BRANCH_FORMAT}", namespace)
        branches: list[BranchInfo] = []
        for line in result.stdout.splitlines():
            refname, sha, upstream, head_marker = (line.split("\0") + ["", "", "", ""])[:4]
            if not refname or refname.endswith("/HEAD"):
                continue
            name = refname[len(namespace) + 1 :]
            branches.append(
                BranchInfo(
                    name=name,
                    is_remote=remote,
                    current=head_marker.strip() == "*",
                    commit=sha or None,
                    upstream=upstream or None,
                )
            )
        return sorted(branches, key=lambda item: item.name)

    def set_branch(self, name: str, create: bool = False) -> BranchInfo:
        branch = self._validate_name(name)
        if self.workspace.load_merge_state() is not None or self.backend.merge_in_progress():
            raise ProjectsError(
                ErrorCode.CONFLICT,
                "Cannot switch branches while a merge is in progress",
                "Complete the merge with commit or abort it first.",
                {"branch": branch},
            )

        tracking = None if "/" in branch else self._remote_tracking_for(branch)
        if self._local_exists(branch):
            args = ["checkout", "-q", branch]
        elif self._remote_exists(branch):
            local_name = branch.split("/", 1)[1]
            if self._local_exists(local_name):
                raise ProjectsError(
                    ErrorCode.ALREADY_EXISTS,
                    f"Local branch '{local_name}' already exists",
                    f"Switch to '{local_name}' directly.",
                    {"branch": local_name},
                )
            args = ["checkout", "-q", "--track", "-b", local_name, f"refs/remotes/{branch}"]
            branch = local_name
        elif tracking is not None:
            args = ["checkout", "-q", "--track", "-b", branch, f"refs/remotes/{tracking}"]
        elif create:
            if not self.backend.has_commits():
                raise ProjectsError(
                    ErrorCode.VALIDATION_ERROR,
                    "Cannot create a branch before the first commit",
                    "Commit at least once first.",
                )
            args = ["checkout", "-q", "-b", branch]
        else:
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                f"Branch '{branch}' not found",
                "Pass create=true to create it from HEAD.",
                {"branch": branch},
            )

        result = self.backend.run(*args, check=False)
        if not result.ok:
            if any(marker in result.stderr for marker in DIRTY_CHECKOUT_MARKERS):
                raise ProjectsError(
                    ErrorCode.DIRTY_CHECKOUT,
                    f"Local changes would be overwritten by switching to '{branch}'",
                    "Commit or revert local changes first.",
                    {"branch": branch, "stderr": result.stderr.strip()},
                )
            raise backend_error(args, result)

        logger.info("Switched project %s to branch %s", self.workspace.project_id, branch)
        return self._branch_info(branch)

    def delete_branch(self, name: str, force: bool = False) -> None:
        branch = self._validate_name(name)
        if not self._local_exists(branch):
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                f"Branch '{branch}' not found",
                "List branches with get_branches.",
                {"branch": branch},
            )
        if self.backend.current_branch() == branch:
            raise ProjectsError(
                ErrorCode.CONFLICT,
                f"Cannot delete the checked-out branch '{branch}'",
                "Switch to another branch first.",
                {"branch": branch},
            )
        if not force and not self._reachable_elsewhere(branch):
            raise ProjectsError(
                ErrorCode.CONFLICT,
                f"Branch '{branch}' has commits not reachable from any other branch",
                "Merge the branch first or pass force=true.",
                {"branch": branch},
            )
        self.backend.run("branch", "-D", "--", branch)
        logger.info("Deleted branch %s in project %s", branch, self.workspace.project_id)

    def get_branch_status(self, name: str) -> BranchStatus:
        """Compare a local branch with its upstream, or a remote ref with the current branch."""
        ref = self._validate_name(name)
        if self._remote_exists(ref) and not self._local_exists(ref):
            local = self.backend.current_branch()
            if local is None:
                raise ProjectsError(
                    ErrorCode.VALIDATION_ERROR,
                    "HEAD is detached",
                    "Switch to a branch before comparing with a remote ref.",
                )
            remote = ref
            remote_rev = f"refs/remotes/{ref}"
        elif self._local_exists(ref):
            local = ref
            upstream = self.upstream_of(ref)
            if upstream is None:
                raise ProjectsError(
                    ErrorCode.NOT_FOUND,
                    f"Branch '{ref}' has no upstream",
                    "Push with track=true or compare against a remote ref such as origin/main.",
                    {"branch": ref},
                )
            remote = upstream
            remote_rev = f"{ref}@{{upstream}}"
        else:
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                f"Branch '{ref}' not found",
                "List branches with get_branches.",
                {"branch": ref},
            )

        if self.backend.resolve_commit(f"refs/heads/{local}") is None:
            return BranchStatus(local=local, remote=remote, ahead=0, behind=0)
        ahead, behind = self.backend.count_left_right(f"refs/heads/{local}", remote_rev)
        return BranchStatus(local=local, remote=remote, ahead=ahead, behind=behind)

    def upstream_of(self, branch: str) -> str | None:
        result = self.backend.run(
            "rev-parse", "--abbrev-ref", "--symbolic-full-name", f"{branch}@{{upstream}}", check=False
        )
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def _branch_info(self, name: str) -> BranchInfo:
        for item in self.get_branches(remote=False):
            if item.name == name:
                return item
        return BranchInfo(name=name, current=self.backend.current_branch() == name)

    def _reachable_elsewhere(self, name: str) -> bool:
        """Return whether another local or remote-tracking branch contains the tip of `name`."""
        own_ref = f"refs/heads/{name}"
        result = self.backend.run(
            "for-each-ref", "--format=%(refname)", "--contains", own_ref, "refs/heads", "refs/remotes"
        )
        return any(
            ref and ref != own_ref and not ref.endswith("/HEAD") for ref in result.stdout.splitlines()
        )

    def _local_exists(self, name: str) -> bool:
        result = self.backend.run("show-ref", "--verify", "-q", f"refs/heads/{name}", check=False)
        return result.ok

    def _remote_exists(self, name: str) -> bool:
        if "/" not in name:
            return False
        result = self.backend.run("show-ref", "--verify", "-q", f"refs/remotes/{name}", check=False)
        return result.ok

    def _remote_tracking_for(self, name: str) -> str | None:
        """Return the single remote-tracking ref named `<remote>/<name>`, if unambiguous."""
        matches = [
            item.name
            for item in self.get_branches(remote=True)
            if item.name.split("/", 1)[-1] == name
        ]
        if len(matches) == 1:
            return matches[0]
        return None

    def _validate_name(self, name: str) -> str:
        branch = str(name or "").strip()
        if not branch or branch.startswith("-") or not _valid_ref_name(branch):
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                f"Invalid branch name: {name!r}",
                "Use a valid git branch name.",
            )
        return branch


_INVALID_REF = re.compile(r"(\.\.|@\{|[\x00-\x20~^:?*\[\\\x7f]|//|/\.|\.lock$|\.$|^/|/$)")


def _valid_ref_name(name: str) -> bool:
    return name != "@" and not _INVALID_REF.search(name)
