"""Repository backend: thin GitPython wrapper around one working tree."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath, PureWindowsPath

import git
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from .errors import ErrorCode, ProjectsError

logger = logging.getLogger(__name__)

URL_USERINFO_PATTERN = re.compile(r"(?i)\b([a-z][a-z0-9+.\-]*://)[^/@\s]+@")
CREDENTIAL_URL_PATTERN = re.compile(r"(?i)^[a-z][a-z0-9+.\-]*://[^/@\s]+@")


@dataclass(frozen=True)
class GitResult:
    """Outcome of one git invocation."""

    status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.status == 0


@dataclass(frozen=True)
class StatusEntry:
    """One porcelain v1 status record."""

    path: str
    index: str
    worktree: str
    original_path: str | None = None

    @property
    def untracked(self) -> bool:
        return self.index == "?" and self.worktree == "?"

    @property
    def conflicted(self) -> bool:
        pair = self.index + self.worktree
        return "U" in pair or pair in {"AA", "DD"}

    @property
    def staged(self) -> bool:
        return not self.untracked and not self.conflicted and self.index not in {" ", "?", "!"}

    @property
    def unstaged(self) -> bool:
        return not self.untracked and not self.conflicted and self.worktree not in {" ", "?", "!"}


def scrub_credentials(text: str) -> str:
    """Remove inline userinfo from any URL embedded in text."""
    return URL_USERINFO_PATTERN.sub(r"\1***@", text)


def has_inline_credentials(url: str) -> bool:
    return bool(CREDENTIAL_URL_PATTERN.match(url.strip()))


def normalize_repo_path(path: str, field_name: str = "path") -> str:
    """Validate a repository-relative path and return its normalized posix form."""
    raw = str(path or "").strip().replace("\\", "/")
    if not raw:
        raise ProjectsError(
            ErrorCode.VALIDATION_ERROR,
            f"{field_name} must not be empty",
            "Provide a repository-relative file path.",
        )
    if raw.startswith("/") or PureWindowsPath(raw).drive:
        raise ProjectsError(
            ErrorCode.VALIDATION_ERROR,
            f"{field_name} must be relative to the project root: {path}",
            "Remove the leading slash or drive letter.",
        )
    parts = [part for part in PurePosixPath(raw).parts if part not in {"", "."}]
    if not parts or ".." in parts:
        raise ProjectsError(
            ErrorCode.VALIDATION_ERROR,
            f"{field_name} escapes the project root: {path}",
            "Use a path inside the project directory.",
        )
    if parts[0] == ".git":
        raise ProjectsError(
            ErrorCode.VALIDATION_ERROR,
            f"{field_name} points inside repository metadata: {path}",
            "Use a path inside the working tree.",
        )
    return "/".join(parts)


class GitBackend:
    """Primitive git operations for one on-disk working tree."""

    def __init__(self, path: Path, network_timeout: float | None = None) -> None:
        self.path = Path(path)
        self.network_timeout = network_timeout
        self._repo: git.Repo | None = None

    @classmethod
    def init(cls, path: Path, default_branch: str, network_timeout: float | None = None) -> "GitBackend":
        path.mkdir(parents=True, exist_ok=True)
        try:
            git.Repo.init(str(path))
        except GitCommandError as exc:
            raise _error_from_exception(exc, "init") from exc
        backend = cls(path, network_timeout=network_timeout)
        backend.run("symbolic-ref", "HEAD", f"refs/heads/{default_branch}")
        return backend

    @classmethod
    def clone(cls, url: str, path: Path, network_timeout: float | None = None) -> "GitBackend":
        logger.info("Cloning %s into %s", scrub_credentials(url), path)
        path.parent.mkdir(parents=True, exist_ok=True)
        status, stdout, stderr = git.Git(str(path.parent)).execute(
            ["git", "clone", "--", url, str(path)],
            with_extended_output=True,
            with_exceptions=False,
            kill_after_timeout=network_timeout,
            env={"GIT_TERMINAL_PROMPT": "0"},
        )
        result = GitResult(status=int(status or 0), stdout=stdout or "", stderr=stderr or "")
        if not result.ok:
            raise backend_error(("clone",), result)
        return cls(path, network_timeout=network_timeout)

    @property
    def exists(self) -> bool:
        return (self.path / ".git").exists()

    @property
    def repo(self) -> git.Repo:
        if self._repo is None:
            try:
                self._repo = git.Repo(str(self.path))
            except (InvalidGitRepositoryError, NoSuchPathError) as exc:
                raise ProjectsError(
                    ErrorCode.VALIDATION_ERROR,
                    f"No repository found at {self.path.name}",
                    "Initialise the project first.",
                ) from exc
            self._repo.git.update_environment(GIT_TERMINAL_PROMPT="0")
        return self._repo

    @property
    def git_dir(self) -> Path:
        return Path(self.repo.git_dir)

    def close(self) -> None:
        if self._repo is not None:
            self._repo.close()
            self._repo = None

    def run(
        self,
        *args: str,
        check: bool = True,
        timeout: float | None = None,
        strip: bool = True,
    ) -> GitResult:
        """Run one git command inside the working tree."""
        logger.debug("git %s", scrub_credentials(" ".join(args)))
        status, stdout, stderr = self.repo.git.execute(
            ["git", *args],
            with_extended_output=True,
            with_exceptions=False,
            kill_after_timeout=timeout,
            strip_newline_in_stdout=strip,
        )
        result = GitResult(status=int(status or 0), stdout=stdout or "", stderr=stderr or "")
        if check and not result.ok:
            raise backend_error(args, result)
        return result

    def run_network(self, *args: str, check: bool = True) -> GitResult:
        return self.run(*args, check=check, timeout=self.network_timeout)

    def head_sha(self) -> str | None:
        result = self.run("rev-parse", "--verify", "-q", "HEAD", check=False)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def current_branch(self) -> str | None:
        result = self.run("symbolic-ref", "--short", "-q", "HEAD", check=False)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def resolve_commit(self, rev: str) -> str | None:
        if not rev or rev.startswith("-"):
            return None
        result = self.run("rev-parse", "--verify", "-q", f"{rev}^{{commit}}", check=False)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def has_commits(self) -> bool:
        return self.head_sha() is not None

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self.run("merge-base", "--is-ancestor", ancestor, descendant, check=False)
        if result.status in (0, 1):
            return result.status == 0
        raise backend_error(("merge-base",), result)

    def merge_base(self, first: str, second: str) -> str | None:
        result = self.run("merge-base", first, second, check=False)
        if result.ok:
            return result.stdout.strip() or None
        if result.status == 1:
            return None
        raise backend_error(("merge-base",), result)

    def count_left_right(self, left: str, right: str) -> tuple[int, int]:
        result = self.run("rev-list", "--left-right", "--count", f"{left}...{right}")
        ahead, behind = result.stdout.split()
        return int(ahead), int(behind)

    def status_entries(self) -> list[StatusEntry]:
        result = self.run(
            "status", "--porcelain=v1", "-z", "--no-renames", "--untracked-files=all", strip=False
        )
        chunks = result.stdout.split("\0")
        entries: list[StatusEntry] = []
        index = 0
        while index < len(chunks):
            chunk = chunks[index]
            index += 1
            if len(chunk) < 4:
                continue
            x, y, path = chunk[0], chunk[1], chunk[3:]
            original: str | None = None
            if x in {"R", "C"}:
                original = chunks[index] if index < len(chunks) else None
                index += 1
            entries.append(StatusEntry(path=path, index=x, worktree=y, original_path=original))
        return entries

    def tracked_paths(self) -> list[str]:
        result = self.run("ls-files", "-z", strip=False)
        return sorted({item for item in result.stdout.split("\0") if item})

    def unmerged_paths(self) -> list[str]:
        result = self.run("diff", "--name-only", "--diff-filter=U", "-z", strip=False)
        return sorted({item for item in result.stdout.split("\0") if item})

    def tree_paths(self, rev: str) -> set[str]:
        result = self.run("ls-tree", "-r", "--name-only", "-z", rev, strip=False)
        return {item for item in result.stdout.split("\0") if item}

    def show_blob(self, spec: str) -> str | None:
        result = self.run("show", spec, check=False, strip=False)
        if result.ok:
            return result.stdout
        return None

    def set_user(self, name: str, email: str) -> None:
        with self.repo.config_writer() as writer:
            writer.set_value("user", "name", name)
            writer.set_value("user", "email", email)

    def get_user(self) -> tuple[str, str] | None:
        reader = self.repo.config_reader("repository")
        if not reader.has_section("user"):
            return None
        name = reader.get_value("user", "name", default="")
        email = reader.get_value("user", "email", default="")
        if not name and not email:
            return None
        return str(name), str(email)

    def merge_in_progress(self) -> bool:
        return (self.git_dir / "MERGE_HEAD").exists()


def backend_error(args: tuple[str, ...] | list[str], result: GitResult) -> ProjectsError:
    command = args[0] if args else "git"
    stderr = scrub_credentials(result.stderr.strip() or result.stdout.strip())
    return ProjectsError(
        ErrorCode.VCS_BACKEND_ERROR,
        f"git {command} failed: {stderr or f'exit status {result.status}'}",
        "Inspect details.stderr for the underlying repository error.",
        {"command": command, "exit_status": result.status, "stderr": stderr},
    )


def _error_from_exception(exc: GitCommandError, command: str) -> ProjectsError:
    stderr = exc.stderr if isinstance(exc.stderr, str) else str(exc.stderr or "")
    result = GitResult(status=int(exc.status or 1) if isinstance(exc.status, int) else 1, stdout="", stderr=stderr)
    return backend_error((command,), result)
