"""Project registry: lifecycle, settings and per-caller active-project sessions."""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any

from .backend import GitBackend, normalize_repo_path
from .constants import DEFAULT_BRANCH, DEFAULT_REMOTE, MANIFEST_FILE_NAME, SETTINGS_DIR_NAME
from .errors import ErrorCode, ProjectsError
from .file_manager import FileManager
from .locking import LockTable, ReadWriteLock
from .models import (
    CreateProjectRequest,
    GitUser,
    Project,
    ProjectFile,
    ProjectGitSettings,
    ProjectList,
    ProjectMetadataPatch,
    ProjectUpdateRequest,
    RemoteSpec,
    RemoteUrl,
    UpdateIntent,
)
from .remotes import RemoteSync, guard_remote_url
from .workspace import Workspace

logger = logging.getLogger(__name__)

PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
INITIAL_COMMIT_MESSAGE = "Create project"


@dataclass
class _InitialiseSnapshot:
    """Pre-initialisation state of a working tree, restored when initialisation fails."""

    manifest: str | None
    git_config: bytes | None
    git_index: bytes | None
    created: list[Path] = field(default_factory=list)

    @classmethod
    def take(cls, path: Path) -> "_InitialiseSnapshot":
        manifest_path = path / MANIFEST_FILE_NAME
        git_dir = path / ".git"
        return cls(
            manifest=manifest_path.read_text(encoding="utf-8") if manifest_path.is_file() else None,
            git_config=(git_dir / "config").read_bytes() if (git_dir / "config").is_file() else None,
            git_index=(git_dir / "index").read_bytes() if (git_dir / "index").is_file() else None,
        )

    def record_created(self, file_path: Path) -> None:
        # Track the outermost missing ancestor so new directories are removed too.
        top = file_path
        while not top.parent.exists():
            top = top.parent
        self.created.append(top)


class ProjectRegistry:
    """Maps project ids to workspaces and owns caller sessions."""

    def __init__(
        self,
        root: Path,
        default_branch: str = DEFAULT_BRANCH,
        network_timeout: float | None = None,
        file_manager: FileManager | None = None,
    ) -> None:
        self.root = Path(root).expanduser()
        self.default_branch = default_branch
        self.network_timeout = network_timeout
        self.file_manager = file_manager or FileManager()
        self.locks = LockTable()
        self._lock = Lock()
        self._sessions: dict[str, str] = {}
        self._workspaces: dict[str, Workspace] = {}

    # Paths and persisted settings

    def project_path(self, project_id: str) -> Path:
        return self.root / self._validate_id(project_id)

    def settings_path(self, project_id: str) -> Path:
        return self.root / SETTINGS_DIR_NAME / f"{self._validate_id(project_id)}.yaml"

    def exists(self, project_id: str) -> bool:
        return self.project_path(project_id).is_dir()

    def lock_for(self, project_id: str) -> ReadWriteLock:
        return self.locks.get(self._validate_id(project_id))

    # Sessions

    def active_project(self, user: str) -> str | None:
        with self._lock:
            return self._sessions.get(user)

    def set_active_project(self, user: str, project_id: str) -> Project:
        self._require_exists(project_id)
        with self._lock:
            self._sessions[user] = project_id
        logger.info("User %s activated project %s", user, project_id)
        return self._describe(user, project_id)

    def end_session(self, user: str) -> None:
        with self._lock:
            self._sessions.pop(user, None)

    # Lifecycle

    def list_projects(self, user: str) -> ProjectList:
        projects: list[str] = []
        if self.root.is_dir():
            for entry in self.root.iterdir():
                if entry.is_dir() and not entry.name.startswith(".") and PROJECT_ID_RE.match(entry.name):
                    projects.append(entry.name)
        return ProjectList(projects=sorted(projects), active=self.active_project(user))

    def get_project(self, user: str, project_id: str) -> Project | None:
        if not self.exists(project_id):
            return None
        with self.lock_for(project_id).shared():
            return self._describe(user, project_id)

    def create_project(self, user: str, request: CreateProjectRequest) -> Project:
        for name, remote in request.git.remotes.items():
            RemoteSpec(name=name, url=remote.url)
            guard_remote_url(remote.url)
        files = self._validate_files(request.files)
        origin = request.git.remotes.get(DEFAULT_REMOTE)

        # Only the new project's lock is held, so a slow clone never stalls other projects.
        with self.lock_for(request.id).exclusive():
            path = self.project_path(request.id)
            if path.exists():
                raise ProjectsError(
                    ErrorCode.ALREADY_EXISTS,
                    f"Project '{request.id}' already exists",
                    "Choose a different project id.",
                    {"project": request.id},
                )

            backend: GitBackend | None = None
            if origin is not None:
                backend = GitBackend.clone(origin.url, path, network_timeout=self.network_timeout)
            else:
                path.mkdir(parents=True)
            try:
                if backend is not None:
                    self._configure_clone(request, backend)
                else:
                    self._write_manifest(path, request.description, request.summary, request.dependencies, files)

                settings: dict[str, Any] = {
                    "created_at": datetime.now(timezone.utc).isoformat(),
                    "git": {"user": request.git.user.model_dump() if request.git.user else None},
                    "credential_secret_sha256": _digest(request.credential_secret),
                }
                if origin is None and request.git.remotes:
                    settings["pending_remotes"] = {
                        name: remote.url for name, remote in request.git.remotes.items()
                    }
                self.file_manager.write_yaml(self.settings_path(request.id), settings)
            except Exception:
                shutil.rmtree(path, ignore_errors=True)
                raise
            finally:
                if backend is not None:
                    backend.close()

        logger.info("Created project %s (cloned=%s)", request.id, origin is not None)
        return self._describe(user, request.id)

    def update_project(self, user: str, project_id: str, request: ProjectUpdateRequest) -> Project:
        if request.intent == UpdateIntent.ACTIVATE:
            return self.set_active_project(user, project_id)
        if request.intent == UpdateIntent.INITIALISE:
            return self.initialise_project(user, project_id)
        return self._update_metadata(user, project_id, request.patch or ProjectMetadataPatch())

    def initialise_project(self, user: str, project_id: str) -> Project:
        path = self._require_exists(project_id)
        with self.lock_for(project_id).exclusive():
            existing = GitBackend(path, network_timeout=self.network_timeout)
            if existing.exists and existing.has_commits():
                existing.close()
                raise ProjectsError(
                    ErrorCode.ALREADY_EXISTS,
                    f"Project '{project_id}' is already initialised",
                    "Use the project's workspace operations instead.",
                    {"project": project_id},
                )
            existing.close()

            settings = self.file_manager.read_yaml(self.settings_path(project_id))
            snapshot = _InitialiseSnapshot.take(path)
            try:
                workspace = self._initialise_repository(project_id, path, settings, snapshot)
            except Exception:
                self._rollback_initialise(path, snapshot)
                raise

            # Settings change only once the initial commit exists.
            if settings.pop("pending_remotes", None) is not None:
                self.file_manager.write_yaml(self.settings_path(project_id), settings)
            backend = workspace.backend
            with self._lock:
                self._workspaces[project_id] = workspace
            logger.info("Initialised project %s on branch %s", project_id, backend.current_branch())
            return self._describe(user, project_id)

    def delete_project(self, user: str, project_id: str) -> None:
        path = self._require_exists(project_id)
        # Project lock first, then the registry lock, the same order readers use.
        with self.lock_for(project_id).exclusive():
            with self._lock:
                holders = sorted(name for name, active in self._sessions.items() if active == project_id)
                if holders:
                    raise ProjectsError(
                        ErrorCode.CONFLICT,
                        f"Project '{project_id}' is active in {len(holders)} session(s)",
                        "Switch the active project or end the session first.",
                        {"project": project_id},
                    )
                workspace = self._workspaces.pop(project_id, None)
            if workspace is not None:
                workspace.backend.close()
            shutil.rmtree(path)
            self.file_manager.remove(self.settings_path(project_id))
        self.locks.discard(project_id)
        logger.info("User %s deleted project %s", user, project_id)

    def workspace(self, project_id: str) -> Workspace:
        """Return the workspace of an initialised project."""
        path = self._require_exists(project_id)
        with self._lock:
            cached = self._workspaces.get(project_id)
            if cached is not None and cached.backend.exists:
                return cached
        backend = GitBackend(path, network_timeout=self.network_timeout)
        if not backend.exists:
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                f"Project '{project_id}' is not initialised",
                "Initialise the project first.",
                {"project": project_id},
            )
        workspace = Workspace(project_id, backend, self.lock_for(project_id), self.file_manager)
        with self._lock:
            self._workspaces.setdefault(project_id, workspace)
            return self._workspaces[project_id]

    # Internals

    def _update_metadata(self, user: str, project_id: str, patch: ProjectMetadataPatch) -> Project:
        path = self._require_exists(project_id)
        if patch.git is not None:
            for name, remote in patch.git.remotes.items():
                RemoteSpec(name=name, url=remote.url)
                guard_remote_url(remote.url)
        files = self._validate_files(patch.files) if patch.files is not None else None

        with self.lock_for(project_id).exclusive():
            settings = self.file_manager.read_yaml(self.settings_path(project_id))
            if patch.credential_secret is not None:
                stored = settings.get("credential_secret_sha256")
                if stored and not hmac.compare_digest(stored, _digest(patch.current_credential_secret) or ""):
                    raise ProjectsError(
                        ErrorCode.VALIDATION_ERROR,
                        "current_credential_secret does not match",
                        "Provide the existing credential secret to change it.",
                        {"project": project_id},
                    )

            manifest_fields = (patch.description, patch.summary, patch.dependencies, files)
            if any(value is not None for value in manifest_fields):
                manifest = self._read_manifest(path)
                self._write_manifest(
                    path,
                    patch.description if patch.description is not None else str(manifest.get("description") or ""),
                    patch.summary if patch.summary is not None else str(manifest.get("summary") or ""),
                    patch.dependencies
                    if patch.dependencies is not None
                    else dict(manifest.get("dependencies") or {}),
                    files if files is not None else [ProjectFile(**item) for item in manifest.get("files") or []],
                )

            backend = GitBackend(path, network_timeout=self.network_timeout)
            initialised = backend.exists
            if patch.git is not None and patch.git.user is not None:
                settings.setdefault("git", {})
                settings["git"] = {**(settings.get("git") or {}), "user": patch.git.user.model_dump()}
                if initialised:
                    backend.set_user(patch.git.user.name, patch.git.user.email)

            if patch.git is not None and patch.git.remotes:
                if initialised:
                    remotes = RemoteSync(Workspace(project_id, backend, self.lock_for(project_id), self.file_manager))
                    existing = set(remotes.remote_names())
                    for name, remote in patch.git.remotes.items():
                        spec = RemoteSpec(name=name, url=remote.url)
                        if name in existing:
                            remotes.update_remote(spec)
                        else:
                            remotes.add_remote(spec)
                else:
                    pending = dict(settings.get("pending_remotes") or {})
                    pending.update({name: remote.url for name, remote in patch.git.remotes.items()})
                    settings["pending_remotes"] = pending
            backend.close()

            if patch.credential_secret is not None:
                settings["credential_secret_sha256"] = _digest(patch.credential_secret)
            self.file_manager.write_yaml(self.settings_path(project_id), settings)
            logger.info("Updated metadata of project %s", project_id)
            return self._describe(user, project_id)

    def _initialise_repository(
        self, project_id: str, path: Path, settings: dict[str, Any], snapshot: _InitialiseSnapshot
    ) -> Workspace:
        backend = GitBackend.init(path, self.default_branch, network_timeout=self.network_timeout)
        try:
            manifest = self._read_manifest(path)
            self._write_manifest(
                path,
                str(manifest.get("description") or ""),
                str(manifest.get("summary") or ""),
                dict(manifest.get("dependencies") or {}),
                [ProjectFile(**item) for item in manifest.get("files") or []],
            )
            for item in manifest.get("files") or []:
                file_path = path / normalize_repo_path(item.get("path", ""))
                if not file_path.exists():
                    snapshot.record_created(file_path)
                    self.file_manager.write_text(file_path, "")

            user_settings = (settings.get("git") or {}).get("user")
            if user_settings:
                backend.set_user(user_settings["name"], user_settings["email"])

            workspace = Workspace(project_id, backend, self.lock_for(project_id), self.file_manager)
            remotes = RemoteSync(workspace)
            for name, url in (settings.get("pending_remotes") or {}).items():
                remotes.add_remote(RemoteSpec(name=name, url=url))

            backend.run("add", "-A", "--", ".")
            backend.run("commit", "-q", "--allow-empty", "-m", INITIAL_COMMIT_MESSAGE)
        except Exception:
            backend.close()
            raise
        return workspace

    def _rollback_initialise(self, path: Path, snapshot: _InitialiseSnapshot) -> None:
        git_dir = path / ".git"
        if snapshot.git_config is None:
            shutil.rmtree(git_dir, ignore_errors=True)
        else:
            (git_dir / "config").write_bytes(snapshot.git_config)
            if snapshot.git_index is None:
                (git_dir / "index").unlink(missing_ok=True)
            else:
                (git_dir / "index").write_bytes(snapshot.git_index)
        for created in reversed(snapshot.created):
            if created.is_dir():
                shutil.rmtree(created, ignore_errors=True)
            else:
                created.unlink(missing_ok=True)
        manifest_path = path / MANIFEST_FILE_NAME
        if snapshot.manifest is None:
            self.file_manager.remove(manifest_path)
        else:
            self.file_manager.write_text(manifest_path, snapshot.manifest)
        logger.warning("Rolled back failed initialisation of project %s", path.name)

    def _configure_clone(self, request: CreateProjectRequest, backend: GitBackend) -> None:
        if request.git.user is not None:
            backend.set_user(request.git.user.name, request.git.user.email)
        workspace = Workspace(request.id, backend, self.lock_for(request.id), self.file_manager)
        remotes = RemoteSync(workspace)
        for name, remote in request.git.remotes.items():
            if name != DEFAULT_REMOTE:
                remotes.add_remote(RemoteSpec(name=name, url=remote.url))
        if not (backend.path / MANIFEST_FILE_NAME).exists():
            self._write_manifest(
                backend.path,
                request.description,
                request.summary,
                request.dependencies,
                self._validate_files(request.files),
            )

    def _describe(self, user: str, project_id: str) -> Project:
        path = self.project_path(project_id)
        manifest = self._read_manifest(path)
        settings = self.file_manager.read_yaml(self.settings_path(project_id))
        user_settings = (settings.get("git") or {}).get("user")

        backend = GitBackend(path, network_timeout=self.network_timeout)
        initialised = False
        branch: str | None = None
        remotes: dict[str, RemoteUrl] = {}
        if backend.exists:
            initialised = backend.has_commits()
            branch = backend.current_branch()
            workspace = Workspace(project_id, backend, self.lock_for(project_id), self.file_manager)
            for info in RemoteSync(workspace).get_remotes():
                remotes[info.name] = RemoteUrl(url=info.url)
            backend.close()
        else:
            for name, url in (settings.get("pending_remotes") or {}).items():
                remotes[name] = RemoteUrl(url=url)

        return Project(
            id=project_id,
            path=str(path),
            active=self.active_project(user) == project_id,
            initialised=initialised,
            description=str(manifest.get("description") or ""),
            summary=str(manifest.get("summary") or ""),
            dependencies={str(k): str(v) for k, v in (manifest.get("dependencies") or {}).items()},
            files=[ProjectFile(**item) for item in manifest.get("files") or []],
            git=ProjectGitSettings(user=GitUser(**user_settings) if user_settings else None, remotes=remotes),
            credential_secret_set=bool(settings.get("credential_secret_sha256")),
            branch=branch,
            created_at=str(settings.get("created_at") or ""),
        )

    def _read_manifest(self, path: Path) -> dict[str, Any]:
        return self.file_manager.read_yaml(path / MANIFEST_FILE_NAME)

    def _write_manifest(
        self,
        path: Path,
        description: str,
        summary: str,
        dependencies: dict[str, str],
        files: list[ProjectFile],
    ) -> None:
        self.file_manager.write_yaml(
            path / MANIFEST_FILE_NAME,
            {
                "description": description,
                "summary": summary,
                "dependencies": dict(dependencies),
                "files": [item.model_dump() for item in files],
            },
        )

    def _validate_files(self, files: list[ProjectFile]) -> list[ProjectFile]:
        validated: list[ProjectFile] = []
        for item in files:
            rel_path = normalize_repo_path(item.path, field_name=f"files.{item.role}")
            if rel_path == MANIFEST_FILE_NAME:
                raise ProjectsError(
                    ErrorCode.VALIDATION_ERROR,
                    f"files.{item.role} must not point at the project manifest",
                    f"Choose a path other than {MANIFEST_FILE_NAME}.",
                )
            validated.append(ProjectFile(role=item.role, path=rel_path))
        return validated

    def _require_exists(self, project_id: str) -> Path:
        path = self.project_path(project_id)
        if not path.is_dir():
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                f"Project '{project_id}' not found",
                "List projects with list_projects.",
                {"project": project_id},
            )
        return path

    def _validate_id(self, project_id: str) -> str:
        value = str(project_id or "").strip()
        if not PROJECT_ID_RE.match(value):
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                f"Invalid project id: {project_id!r}",
                "Use letters, digits, '_' or '-' (max 64 characters).",
            )
        return value


def _digest(secret: str | None) -> str | None:
    if not secret:
        return None
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()
