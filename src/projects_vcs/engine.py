"""Core projects engine implementing all version-control operations."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .branches import BranchManager
from .constants import DEFAULT_BRANCH
from .errors import ErrorCode, ProjectsError
from .file_manager import FileManager
from .history import HistoryService
from .merge import MergeCoordinator
from .models import (
    BranchInfo,
    BranchRequest,
    BranchStatus,
    CommitDetail,
    CommitList,
    CommitRequest,
    CommitResponse,
    CommitsRequest,
    CreateProjectRequest,
    DiffType,
    FileEntry,
    MergeState,
    OperationResponse,
    Project,
    ProjectList,
    ProjectUpdateRequest,
    PullRequest,
    PullResponse,
    PushRequest,
    PushResponse,
    RemoteInfo,
    RemoteSpec,
    ResolveRequest,
    StatusResponse,
)
from .registry import ProjectRegistry
from .remotes import RemoteSync
from .workspace import Workspace


@dataclass
class ProjectServices:
    """Managers bound to one project's workspace for the duration of a call."""

    workspace: Workspace
    history: HistoryService
    branches: BranchManager
    merge: MergeCoordinator
    remotes: RemoteSync


class ProjectsEngine:
    """Main service implementing project version-control operations.

    Every operation is keyed by a caller identity and a project id. When the
    project id is omitted the caller's active project is used.
    """

    def __init__(
        self,
        root: str | Path,
        default_branch: str = DEFAULT_BRANCH,
        network_timeout: float | None = None,
        file_manager: FileManager | None = None,
    ) -> None:
        """Create an engine rooted at the projects directory."""
        self.registry = ProjectRegistry(
            Path(root),
            default_branch=default_branch,
            network_timeout=network_timeout,
            file_manager=file_manager,
        )

    # Project lifecycle

    def list_projects(self, user: str) -> ProjectList:
        return self.registry.list_projects(user)

    def create_project(self, user: str, request: CreateProjectRequest) -> Project:
        return self.registry.create_project(user, request)

    def get_project(self, user: str, project_id: str) -> Project | None:
        return self.registry.get_project(user, project_id)

    def update_project(self, user: str, project_id: str, request: ProjectUpdateRequest) -> Project:
        """Apply exactly one update intent: activate, initialise or metadata."""
        return self.registry.update_project(user, project_id, request)

    def set_active_project(self, user: str, project_id: str) -> Project:
        return self.registry.set_active_project(user, project_id)

    def initialise_project(self, user: str, project_id: str) -> Project:
        return self.registry.initialise_project(user, project_id)

    def delete_project(self, user: str, project_id: str) -> OperationResponse:
        self.registry.delete_project(user, project_id)
        return OperationResponse(message=f"Project '{project_id}' deleted")

    def end_session(self, user: str) -> OperationResponse:
        self.registry.end_session(user)
        return OperationResponse(message="Session ended")

    # Workspace

    def get_status(self, user: str, project_id: str | None = None, remote: bool = False) -> StatusResponse:
        """Return branch, head and path states; with `remote` also fetch and count ahead/behind."""
        if remote:
            with self._exclusive(user, project_id) as services:
                return services.remotes.status_with_remote(services.workspace.get_status())
        with self._shared(user, project_id) as services:
            return services.workspace.get_status()

    def get_files(self, user: str, project_id: str | None = None) -> list[FileEntry]:
        with self._shared(user, project_id) as services:
            return services.workspace.get_files()

    def get_file(self, user: str, project_id: str | None, tree: str, path: str) -> str:
        with self._shared(user, project_id) as services:
            return services.workspace.get_file(tree, path)

    def revert_file(self, user: str, project_id: str | None, path: str) -> OperationResponse:
        with self._exclusive(user, project_id) as services:
            services.workspace.revert_file(path)
        return OperationResponse(message=f"Reverted {path}")

    def stage_file(self, user: str, project_id: str | None, paths: str | list[str]) -> OperationResponse:
        with self._exclusive(user, project_id) as services:
            staged = services.workspace.stage_file(paths)
        return OperationResponse(message=f"Staged {len(staged)} path(s)")

    def unstage_file(self, user: str, project_id: str | None, path: str | None = None) -> OperationResponse:
        with self._exclusive(user, project_id) as services:
            unstaged = services.workspace.unstage_file(path)
        return OperationResponse(message=f"Unstaged {len(unstaged)} path(s)")

    def commit(self, user: str, project_id: str | None, request: CommitRequest) -> CommitResponse:
        with self._exclusive(user, project_id) as services:
            return services.workspace.commit(request)

    # History

    def get_commits(self, user: str, project_id: str | None, request: CommitsRequest) -> CommitList:
        with self._shared(user, project_id) as services:
            return services.history.get_commits(request.limit, request.before)

    def get_commit(self, user: str, project_id: str | None, sha: str) -> CommitDetail:
        with self._shared(user, project_id) as services:
            return services.history.get_commit(sha)

    def get_file_diff(
        self,
        user: str,
        project_id: str | None,
        diff_type: DiffType | str,
        path: str,
        sha: str | None = None,
    ) -> str:
        with self._shared(user, project_id) as services:
            return services.history.get_file_diff(diff_type, path, sha)

    # Branches

    def get_branches(self, user: str, project_id: str | None = None, remote: bool = False) -> list[BranchInfo]:
        with self._shared(user, project_id) as services:
            return services.branches.get_branches(remote)

    def set_branch(self, user: str, project_id: str | None, request: BranchRequest) -> BranchInfo:
        with self._exclusive(user, project_id) as services:
            return services.branches.set_branch(request.name, request.create)

    def delete_branch(
        self, user: str, project_id: str | None, name: str, force: bool = False
    ) -> OperationResponse:
        with self._exclusive(user, project_id) as services:
            services.branches.delete_branch(name, force)
        return OperationResponse(message=f"Branch '{name}' deleted")

    def get_branch_status(self, user: str, project_id: str | None, name: str) -> BranchStatus:
        with self._shared(user, project_id) as services:
            return services.branches.get_branch_status(name)

    # Merge

    def resolve_merge(self, user: str, project_id: str | None, request: ResolveRequest) -> MergeState:
        with self._exclusive(user, project_id) as services:
            return services.merge.resolve_merge(request)

    def abort_merge(self, user: str, project_id: str | None = None) -> OperationResponse:
        with self._exclusive(user, project_id) as services:
            services.merge.abort_merge()
        return OperationResponse(message="Merge aborted")

    # Remotes

    def get_remotes(self, user: str, project_id: str | None = None) -> list[RemoteInfo]:
        with self._shared(user, project_id) as services:
            return services.remotes.get_remotes()

    def add_remote(self, user: str, project_id: str | None, spec: RemoteSpec) -> RemoteInfo:
        with self._exclusive(user, project_id) as services:
            return services.remotes.add_remote(spec)

    def update_remote(self, user: str, project_id: str | None, spec: RemoteSpec) -> RemoteInfo:
        with self._exclusive(user, project_id) as services:
            return services.remotes.update_remote(spec)

    def remove_remote(self, user: str, project_id: str | None, name: str) -> OperationResponse:
        with self._exclusive(user, project_id) as services:
            services.remotes.remove_remote(name)
        return OperationResponse(message=f"Remote '{name}' removed")

    def push(self, user: str, project_id: str | None, request: PushRequest) -> PushResponse:
        with self._exclusive(user, project_id) as services:
            return services.remotes.push(request)

    def pull(self, user: str, project_id: str | None, request: PullRequest) -> PullResponse:
        with self._exclusive(user, project_id) as services:
            return services.remotes.pull(request)

    # Internals

    def resolve_project_id(self, user: str, project_id: str | None) -> str:
        """Return the explicit project id or the caller's active project."""
        if project_id:
            return project_id
        active = self.registry.active_project(user)
        if active is None:
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                "No project id given and no active project",
                "Pass a project id or activate a project first.",
            )
        return active

    def _services(self, user: str, project_id: str | None) -> ProjectServices:
        workspace = self.registry.workspace(self.resolve_project_id(user, project_id))
        branches = BranchManager(workspace)
        merge = MergeCoordinator(workspace)
        return ProjectServices(
            workspace=workspace,
            history=HistoryService(workspace.backend),
            branches=branches,
            merge=merge,
            remotes=RemoteSync(workspace, branches=branches, merge=merge),
        )

    @contextmanager
    def _shared(self, user: str, project_id: str | None) -> Iterator[ProjectServices]:
        services = self._services(user, project_id)
        with services.workspace.lock.shared():
            yield services

    @contextmanager
    def _exclusive(self, user: str, project_id: str | None) -> Iterator[ProjectServices]:
        services = self._services(user, project_id)
        with services.workspace.lock.exclusive():
            yield services
