"""Commit history pagination and diff computation."""

from __future__ import annotations

from datetime import datetime, timezone

from .backend import GitBackend, GitResult, normalize_repo_path
from .constants import DEFAULT_COMMIT_LIMIT
from .errors import ErrorCode, ProjectsError
from .models import CommitAuthor, CommitDetail, CommitList, CommitSummary, DiffType

_RECORD = "\x1e"
_FIELD = "\x1f"
_SUMMARY_FORMAT = "%x1e%H%x1f%P%x1f%an%x1f%ae%x1f%ct%x1f%B"
_PATHS_FORMAT = "%x1e%H%x1f"


class HistoryService:
    """Read-only history and diff queries over a repository backend."""

    def __init__(self, backend: GitBackend) -> None:
        self.backend = backend

    def get_commits(self, limit: int = DEFAULT_COMMIT_LIMIT, before: str | None = None) -> CommitList:
        """Return up to `limit` commits from HEAD, strictly after the `before` cursor."""
        if limit < 1:
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                "limit must be >= 1",
                "Request at least one commit.",
            )
        head = self.backend.head_sha()
        if head is None:
            if before:
                raise self._unknown_commit(before)
            return CommitList()

        ordered = self._ordered_shas(head)
        start = 0
        if before:
            cursor = self.backend.resolve_commit(before)
            if cursor is None or cursor not in ordered:
                raise self._unknown_commit(before)
            start = ordered.index(cursor) + 1

        commits = self._summaries(ordered[start : start + limit])
        return CommitList(commits=commits, count=len(commits), total=len(ordered))

    def get_commit(self, sha: str) -> CommitDetail:
        resolved = self.backend.resolve_commit(str(sha or "").strip())
        if resolved is None:
            raise self._unknown_commit(sha)
        summary = self._summaries([resolved])[0]
        patch = self._commit_patch(resolved)
        return CommitDetail(**summary.model_dump(), patch=patch.stdout)

    def get_file_diff(self, diff_type: DiffType | str, path: str, sha: str | None = None) -> str:
        rel_path = normalize_repo_path(path)
        try:
            kind = DiffType(diff_type)
        except ValueError as exc:
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                f"Unsupported diff type '{diff_type}'",
                "Use one of: unstaged, staged, commit.",
            ) from exc

        if kind == DiffType.UNSTAGED:
            result = self.backend.run("diff", "--", rel_path, strip=False)
        elif kind == DiffType.STAGED:
            result = self.backend.run("diff", "--cached", "--", rel_path, strip=False)
        else:
            target = self.backend.resolve_commit(sha or "HEAD")
            if target is None:
                raise self._unknown_commit(sha or "HEAD")
            result = self._commit_patch(target, rel_path)

        if not result.stdout.strip():
            raise ProjectsError(
                ErrorCode.NOT_FOUND,
                f"No {kind.value} differences for '{rel_path}'",
                "Check the path and diff type.",
                {"path": rel_path, "type": kind.value},
            )
        return result.stdout

    def _commit_patch(self, sha: str, *paths: str) -> GitResult:
        # Merge commits are diffed against their first parent.
        pathspec = ["--", *paths] if paths else []
        if self.backend.resolve_commit(f"{sha}^1") is not None:
            return self.backend.run("diff", f"{sha}^1", sha, *pathspec, strip=False)
        return self.backend.run("show", "--format=", "--patch", sha, *pathspec, strip=False)

    def _ordered_shas(self, head: str) -> list[str]:
        result = self.backend.run("rev-list", "--topo-order", head)
        return [line for line in result.stdout.splitlines() if line]

    def _refs_by_commit(self) -> dict[str, list[str]]:
        result = self.backend.run(
            "for-each-ref", "--format=%(objectname) %(refname:short)", "refs/heads", "refs/remotes", "refs/tags"
        )
        refs: dict[str, list[str]] = {}
        for line in result.stdout.splitlines():
            sha, _, name = line.partition(" ")
            if not name or name.endswith("/HEAD"):
                continue
            refs.setdefault(sha, []).append(name)
        return refs

    def _summaries(self, shas: list[str]) -> list[CommitSummary]:
        """Describe `shas` in the given order.

        Everything is read through `git log` subprocesses so concurrent readers
        never share a persistent object-database pipe.
        """
        if not shas:
            return []
        refs = self._refs_by_commit()
        paths = self._changed_paths(shas)
        result = self.backend.run(
            "log", "--no-walk=unsorted", f"--format={_SUMMARY_FORMAT}", *shas, strip=False
        )
        by_sha: dict[str, CommitSummary] = {}
        for record in result.stdout.split(_RECORD)[1:]:
            sha, parents, name, email, committed, message = record.split(_FIELD, 5)
            by_sha[sha] = CommitSummary(
                sha=sha,
                short_sha=sha[:7],
                parents=parents.split(),
                author=CommitAuthor(name=name, email=email),
                title=next(iter(message.splitlines()), ""),
                message=message.strip(),
                timestamp=datetime.fromtimestamp(int(committed), tz=timezone.utc).isoformat(),
                refs=sorted(refs.get(sha, [])),
                changed_paths=sorted(paths.get(sha, ())),
            )
        return [by_sha[sha] for sha in shas if sha in by_sha]

    def _changed_paths(self, shas: list[str]) -> dict[str, set[str]]:
        # -m repeats a merge once per parent; the union of its paths is kept.
        result = self.backend.run(
            "log",
            "--no-walk=unsorted",
            "-m",
            "--name-only",
            "-z",
            f"--format={_PATHS_FORMAT}",
            *shas,
            strip=False,
        )
        paths: dict[str, set[str]] = {}
        for record in result.stdout.split(_RECORD)[1:]:
            sha, _, listing = record.partition(_FIELD)
            bucket = paths.setdefault(sha.strip(), set())
            for item in listing.split("\0"):
                item = item.strip("\n")
                if item:
                    bucket.add(item)
        return paths

    def _unknown_commit(self, sha: str | None) -> ProjectsError:
        return ProjectsError(
            ErrorCode.NOT_FOUND,
            f"Commit '{sha}' not found in history",
            "Use get_commits to list known commits.",
            {"sha": sha},
        )

