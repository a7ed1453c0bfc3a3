"""Per-project workspace: staging index, working-tree access, commit, merge state."""

from __future__ import annotations

import logging
from pathlib import Path

from .backend import GitBackend, StatusEntry, normalize_repo_path
from .constants import MERGE_STATE_FILE_NAME
from .errors import ErrorCode, ProjectsError
from .file_manager import FileManager
from .locking import ReadWriteLock
from .models import (
    CommitRequest,
    CommitResponse,
    FileEntry,
    MergeState,
    StatusResponse,
)

logger = logging.getLogger(__name__)

WORKING_TREE_NAMES = {"_", "working", "worktree"}
INDEX_TREE_NAMES = {"index", "stage", ":"}


class Workspace:
    """Facade over one project's repository backend."""

    def __init__(
        self,
        project_id: str,
        backend: GitBackend,
        lock: ReadWriteLock,
        file_manager: FileManager | None = None,
    ) -> None:
        self.project_id = project_id
        self.backend = backend
        self.lock = lock
        self.file_manager = file_manager or FileManager()

    @property
    def root(self) -> Path:
        return self.backend.path

    # Merge state persistence

    @property
    def merge_state_path(self) -> Path:
        return self.backend.git_dir / MERGE_STATE_FILE_NAME

    def load_merge_state(self) -> MergeState | None:
        payload = self.file_manager.read_yaml(self.merge_state_path)
        if not payload:
            return None
        return MergeState.model_validate(payload)

    def save_merge_state(self, state: MergeState) -> None:
        self.file_manager.write_yaml(self.merge_state_path, state.model_dump(mode="json"))

    def clear_merge_state(self) -> None:
        self.file_manager.remove(self.merge_state_path)

    # Status and file access

    def get_status(self) -> StatusResponse:
        entries = self.backend.status_entries()
        return StatusResponse(
            branch=self.backend.current_branch(),
            head=self.backend.head_sha(),
            staged=sorted(entry.path for entry in entries if entry.staged),
            unstaged=sorted(entry.path for entry in entries if entry.unstaged),
            untracked=sorted(entry.path for entry in entries if entry.untracked),
            conflicted=sorted(entry.path for entry in entries if entry.conflicted),
            merge_state=self.load_merge_state(),
        )

    def get_files(self) -> list[FileEntry]:
        by_path: dict[str, StatusEntry] = {entry.path: entry for entry in self.backend.status_entries()}
        paths = set(self.backend.tracked_paths()) | set(by_path)
        files: list[FileEntry] = []
        for path in sorted(paths):
            files.append(FileEntry(path=path, status=_file_status(by_path.get(path))))
        return files

    def get_file(self, tree: str, path: str) -> str:
        rel_path = normalize_repo_path(path)
        tree_name = str(tree or "_").strip()

        if tree_name in WORKING_TREE_NAMES:
            file_path = self.root / rel_path
            if not file_path.is_file():
                raise ProjectsError(
                    ErrorCode.NOT_FOUND,
                    f"File '{rel_path}' not found in working tree",
                    "Check the path with get_files.",
                    {"path": rel_path, "tree": "working"},
                )
            return file_path.read_bytes().decode("utf-8", errors="replace")

        if tree_name in INDEX_TREE_NAMES:
            content = self.backend.show_blob(f":{rel_path}")
            tree_label = "index"
        else:
            sha = self.backend.resolve_commit(tree_name)
            if sha is None:
                raise ProjectsError(
                    ErrorCode.NOT_FOUND,
                    f"Unknown tree '{tree_name}'",
                    "Use '_' for the working tree, 'index' for the stage, or a commit sha.",
                    {"tree": tree_name},
                )
            content = self.backend.show_blob(f"{sha}:{rel_path}")
            tree_label = sha

        if content is None:
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                f"File '{rel_path}' not found in {tree_label}",
                "Check the path and tree.",
                {"path": rel_path, "tree": tree_label},
            )
        return content

    def revert_file(self, path: str) -> None:
        rel_path = normalize_repo_path(path)
        tracked = self.backend.run("ls-files", "--error-unmatch", "--", rel_path, check=False)
        if not tracked.ok:
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                f"File '{rel_path}' has no tracked version to revert to",
                "Only tracked files can be reverted.",
                {"path": rel_path},
            )
        self._reject_conflicted([rel_path], action="revert")
        self.backend.run("checkout", "-q", "--", rel_path)
        logger.debug("Reverted %s in project %s", rel_path, self.project_id)

    # Staging

    def stage_file(self, paths: str | list[str]) -> list[str]:
        requested = [paths] if isinstance(paths, str) else list(paths)
        if not requested:
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                "No paths given to stage",
                "Provide one path or a list of paths.",
            )
        rel_paths = _unique([normalize_repo_path(item) for item in requested])
        self._reject_conflicted(rel_paths, action="stage")

        changed = {entry.path for entry in self.backend.status_entries()}
        tracked = set(self.backend.tracked_paths())
        missing = [
            item
            for item in rel_paths
            if item not in changed and item not in tracked and not (self.root / item).exists()
        ]
        if missing:
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                "One or more paths were not found",
                "Check paths with get_files.",
                {"missing_paths": missing},
            )

        self.backend.run("add", "-A", "--", *rel_paths)
        return rel_paths

    def unstage_file(self, path: str | None = None) -> list[str]:
        staged = [entry.path for entry in self.backend.status_entries() if entry.staged]
        if path is None:
            targets = staged
        else:
            rel_path = normalize_repo_path(path)
            self._reject_conflicted([rel_path], action="unstage")
            targets = [rel_path] if rel_path in staged else []
        if not targets:
            return []

        if self.backend.has_commits():
            self.backend.run("reset", "-q", "HEAD", "--", *targets)
        else:
            self.backend.run("rm", "--cached", "-q", "-r", "--", *targets)
        return targets

    # Commit

    def commit(self, request: CommitRequest) -> CommitResponse:
        state = self.load_merge_state()
        unresolved = sorted(set(state.conflicted_paths if state else []) | set(self.backend.unmerged_paths()))
        if unresolved:
            raise ProjectsError(
                ErrorCode.CONFLICT,
                "Cannot commit while merge conflicts are unresolved",
                "Resolve every conflicted path with resolve_merge or abort the merge.",
                {"conflicted_paths": unresolved},
            )

        staged = [entry.path for entry in self.backend.status_entries() if entry.staged]
        completing_merge = state is not None and self.backend.merge_in_progress()
        if not staged and not completing_merge:
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                "Nothing staged to commit",
                "Stage at least one path before committing.",
            )

        self.backend.run("commit", "-q", "-m", request.message)
        if state is not None:
            self.clear_merge_state()
        sha = self.backend.head_sha() or ""
        branch = self.backend.current_branch()
        logger.info(
            "Committed %s on %s in project %s (%d staged paths)",
            sha[:7],
            branch,
            self.project_id,
            len(staged),
        )
        return CommitResponse(
            message="Merge committed" if completing_merge else "Changes committed",
            sha=sha,
            branch=branch,
            merge_completed=completing_merge,
        )

    def _reject_conflicted(self, paths: list[str], action: str) -> None:
        state = self.load_merge_state()
        conflicted = set(state.conflicted_paths if state else []) | set(self.backend.unmerged_paths())
        blocked = [item for item in paths if item in conflicted]
        if blocked:
            raise ProjectsError(
                ErrorCode.CONFLICT,
                f"Cannot {action} paths with unresolved merge conflicts",
                "Use resolve_merge for conflicted paths.",
                {"conflicted_paths": blocked},
            )


def _file_status(entry: StatusEntry | None) -> str:
    if entry is None:
        return "clean"
    if entry.conflicted:
        return "conflicted"
    if entry.untracked:
        return "untracked"
    if entry.worktree == "D":
        return "deleted"
    if entry.unstaged:
        return "modified"
    if entry.staged:
        return "staged"
    return "clean"


def _unique(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result
