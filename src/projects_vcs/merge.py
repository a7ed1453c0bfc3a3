"""Merge state machine: enter from pull, resolve per path, abort."""

from __future__ import annotations

import logging

from .backend import GitBackend, backend_error, normalize_repo_path
from .errors import ErrorCode, ProjectsError
from .models import MergeState, PullResponse, PullResult, ResolveRequest, Resolution
from .workspace import Workspace

logger = logging.getLogger(__name__)

DIRTY_MERGE_MARKERS = (
    "would be overwritten by merge",
    "commit your changes or stash them",
    "not uptodate. Cannot merge",
    "Your local changes",
)


class MergeCoordinator:
    """Drives one project between the clean and merging states."""

    def __init__(self, workspace: Workspace) -> None:
        self.workspace = workspace

    @property
    def backend(self) -> GitBackend:
        return self.workspace.backend

    def in_progress(self) -> bool:
        return self.workspace.load_merge_state() is not None or self.backend.merge_in_progress()

    def begin_merge(self, remote_ref: str, merge_head: str, unrelated: bool = False) -> PullResponse:
        """Merge `merge_head` into HEAD without committing, then settle or persist state.

        A clean merge of related histories is committed immediately. Otherwise the
        merge state is written and the caller must resolve and commit.
        """
        pre_merge_head = self.backend.head_sha()
        if pre_merge_head is None:
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                "Cannot merge into a branch without commits",
                "Commit at least once before pulling divergent history.",
            )

        args = ["merge", "--no-commit", "--no-ff", "--no-edit"]
        if unrelated:
            args.append("--allow-unrelated-histories")
        args.append(merge_head)
        result = self.backend.run(*args, check=False)

        unmerged = self.backend.unmerged_paths()
        if not result.ok and not unmerged and not self.backend.merge_in_progress():
            output = result.stderr + result.stdout
            if any(marker in output for marker in DIRTY_MERGE_MARKERS):
                raise ProjectsError(
                    ErrorCode.DIRTY_CHECKOUT,
                    f"Local changes would be overwritten by merging {remote_ref}",
                    "Commit or revert local changes before pulling.",
                    {"remote_ref": remote_ref, "stderr": output.strip()},
                )
            raise backend_error(args, result)

        conflicted = set(unmerged)
        if unrelated:
            both_sides = self.backend.tree_paths(pre_merge_head) & self.backend.tree_paths(merge_head)
            conflicted |= both_sides

        if not conflicted and not unrelated:
            branch = self.backend.current_branch() or "HEAD"
            self.backend.run("commit", "-q", "--no-edit", "-m", f"Merge {remote_ref} into {branch}")
            head = self.backend.head_sha() or ""
            logger.info(
                "Merged %s into %s in project %s (%s)",
                remote_ref,
                branch,
                self.workspace.project_id,
                head[:7],
            )
            return PullResponse(
                message=f"Merged {remote_ref}",
                result=PullResult.MERGED,
                remote_ref=remote_ref,
                head=head,
            )

        state = MergeState(
            conflicted_paths=sorted(conflicted),
            pre_merge_head=pre_merge_head,
            merge_head=merge_head,
            remote_ref=remote_ref,
            unrelated=unrelated,
        )
        self.workspace.save_merge_state(state)
        logger.info(
            "Merge of %s in project %s stopped with %d conflicted paths",
            remote_ref,
            self.workspace.project_id,
            len(state.conflicted_paths),
        )
        return PullResponse(
            message="Merge requires resolution before commit",
            result=PullResult.CONFLICTS,
            remote_ref=remote_ref,
            head=pre_merge_head,
            merge_state=state,
        )

    def resolve_merge(self, request: ResolveRequest) -> MergeState:
        state = self._require_state()
        rel_path = normalize_repo_path(request.path)
        if rel_path not in state.conflicted_paths:
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                f"Path '{rel_path}' is not conflicted",
                "Resolve only paths listed in merge_state.conflicted_paths.",
                {"path": rel_path, "conflicted_paths": state.conflicted_paths},
            )

        if request.resolution == Resolution.MANUAL:
            self._resolve_manual(rel_path, request.content)
        else:
            side = state.pre_merge_head if request.resolution == Resolution.OURS else state.merge_head
            self._take_side(rel_path, side)

        state.conflicted_paths = [item for item in state.conflicted_paths if item != rel_path]
        state.resolutions[rel_path] = request.resolution
        self.workspace.save_merge_state(state)
        logger.debug(
            "Resolved %s as %s in project %s", rel_path, request.resolution.value, self.workspace.project_id
        )
        return state

    def abort_merge(self) -> None:
        state = self.workspace.load_merge_state()
        if state is None and not self.backend.merge_in_progress():
            raise ProjectsError(
                ErrorCode.CONFLICT,
                "No merge in progress",
                "abort_merge is only valid after a pull stopped for resolution.",
            )

        aborted = False
        if self.backend.merge_in_progress():
            aborted = self.backend.run("merge", "--abort", check=False).ok
        if not aborted:
            target = state.pre_merge_head if state is not None else "HEAD"
            self.backend.run("reset", "-q", "--merge", target)
        self.workspace.clear_merge_state()
        logger.info("Aborted merge in project %s", self.workspace.project_id)

    def _require_state(self) -> MergeState:
        state = self.workspace.load_merge_state()
        if state is None:
            raise ProjectsError(
                ErrorCode.CONFLICT,
                "No merge in progress",
                "Pull divergent history first.",
            )
        return state

    def _take_side(self, rel_path: str, sha: str) -> None:
        if self.backend.run("cat-file", "-e", f"{sha}:{rel_path}", check=False).ok:
            self.backend.run("checkout", "-q", sha, "--", rel_path)
        else:
            self.backend.run("rm", "-q", "-f", "--ignore-unmatch", "--", rel_path)

    def _resolve_manual(self, rel_path: str, content: str | None) -> None:
        file_path = self.workspace.root / rel_path
        if content is not None:
            self.workspace.file_manager.write_text(file_path, content)
        if file_path.exists():
            self.backend.run("add", "--", rel_path)
        else:
            self.backend.run("rm", "-q", "--cached", "--ignore-unmatch", "--", rel_path)
