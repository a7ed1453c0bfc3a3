from __future__ import annotations

import pytest

from conftest import USER, commit_file, write
from projects_vcs.engine import ProjectsEngine
from projects_vcs.errors import ErrorCode, ProjectsError
from projects_vcs.models import CommitRequest, CommitsRequest


def test_initialised_project_has_clean_status(engine: ProjectsEngine, project: str) -> None:
    status = engine.get_status(USER, project)

    assert status.branch == "main"
    assert status.head
    assert status.staged == []
    assert status.unstaged == []
    assert status.untracked == []
    assert status.conflicted == []
    assert status.merge_state is None


def test_stage_then_unstage_restores_status(engine: ProjectsEngine, project: str) -> None:
    write(engine, project, "notes.txt", "first\n")
    before = engine.get_status(USER, project)
    assert before.untracked == ["notes.txt"]

    engine.stage_file(USER, project, ["notes.txt"])
    staged = engine.get_status(USER, project)
    assert staged.staged == ["notes.txt"]
    assert staged.untracked == []

    engine.unstage_file(USER, project, "notes.txt")
    after = engine.get_status(USER, project)
    assert after.staged == before.staged
    assert after.unstaged == before.unstaged
    assert after.untracked == before.untracked


def test_unstage_tracked_modification_keeps_working_tree(engine: ProjectsEngine, project: str) -> None:
    commit_file(engine, project, "notes.txt", "one\n", "Add notes")
    path = write(engine, project, "notes.txt", "two\n")

    engine.stage_file(USER, project, "notes.txt")
    assert engine.get_status(USER, project).staged == ["notes.txt"]

    engine.unstage_file(USER, project)
    status = engine.get_status(USER, project)
    assert status.staged == []
    assert status.unstaged == ["notes.txt"]
    assert path.read_text(encoding="utf-8") == "two\n"


def test_stage_deletion(engine: ProjectsEngine, project: str) -> None:
    commit_file(engine, project, "gone.txt", "bye\n", "Add file")
    (engine.registry.project_path(project) / "gone.txt").unlink()

    files = {entry.path: entry.status for entry in engine.get_files(USER, project)}
    assert files["gone.txt"] == "deleted"

    engine.stage_file(USER, project, ["gone.txt"])
    assert engine.get_status(USER, project).staged == ["gone.txt"]


def test_stage_unknown_path_is_not_found(engine: ProjectsEngine, project: str) -> None:
    with pytest.raises(ProjectsError) as exc_info:
        engine.stage_file(USER, project, ["missing.txt"])
    assert exc_info.value.code == ErrorCode.NOT_FOUND
    assert exc_info.value.details["missing_paths"] == ["missing.txt"]


def test_commit_clears_staging_and_records_paths(engine: ProjectsEngine, project: str) -> None:
    write(engine, project, "a.txt", "a\n")
    write(engine, project, "dir/b.txt", "b\n")
    engine.stage_file(USER, project, ["a.txt", "dir/b.txt"])
    staged = engine.get_status(USER, project).staged

    response = engine.commit(USER, project, CommitRequest(message="Add files"))

    assert response.status == "success"
    assert response.branch == "main"
    assert response.merge_completed is False
    assert engine.get_status(USER, project).staged == []
    latest = engine.get_commits(USER, project, CommitsRequest(limit=1)).commits
    assert [commit.sha for commit in latest] == [response.sha]
    assert {"a.txt", "dir/b.txt"} <= set(staged) <= set(latest[0].changed_paths)
    assert latest[0].title == "Add files"


def test_staged_rename_lists_both_paths_and_unstages_fully(engine: ProjectsEngine, project: str) -> None:
    commit_file(engine, project, "a.txt", "same content\n", "Add a")
    root = engine.registry.project_path(project)
    (root / "a.txt").rename(root / "b.txt")

    engine.stage_file(USER, project, ["a.txt", "b.txt"])
    assert engine.get_status(USER, project).staged == ["a.txt", "b.txt"]

    engine.unstage_file(USER, project)
    status = engine.get_status(USER, project)
    assert status.staged == []
    assert status.unstaged == ["a.txt"]
    assert status.untracked == ["b.txt"]
    assert engine.get_file_diff(USER, project, "unstaged", "a.txt")
    with pytest.raises(ProjectsError) as exc_info:
        engine.get_file_diff(USER, project, "staged", "a.txt")
    assert exc_info.value.code == ErrorCode.NOT_FOUND


def test_commit_without_staged_changes_is_rejected(engine: ProjectsEngine, project: str) -> None:
    write(engine, project, "a.txt", "a\n")
    with pytest.raises(ProjectsError) as exc_info:
        engine.commit(USER, project, CommitRequest(message="Nothing"))
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


def test_get_file_reads_working_tree_index_and_commit(engine: ProjectsEngine, project: str) -> None:
    first = commit_file(engine, project, "notes.txt", "committed\n", "Add notes")
    write(engine, project, "notes.txt", "staged\n")
    engine.stage_file(USER, project, ["notes.txt"])
    write(engine, project, "notes.txt", "working\n")

    assert engine.get_file(USER, project, "_", "notes.txt") == "working\n"
    assert engine.get_file(USER, project, "index", "notes.txt") == "staged\n"
    assert engine.get_file(USER, project, first, "notes.txt") == "committed\n"
    assert engine.get_file(USER, project, "HEAD", "notes.txt") == "committed\n"


def test_get_file_missing_in_tree_is_not_found(engine: ProjectsEngine, project: str) -> None:
    with pytest.raises(ProjectsError) as exc_info:
        engine.get_file(USER, project, "HEAD", "absent.txt")
    assert exc_info.value.code == ErrorCode.NOT_FOUND

    with pytest.raises(ProjectsError) as exc_info:
        engine.get_file(USER, project, "no-such-rev", "project.yaml")
    assert exc_info.value.code == ErrorCode.NOT_FOUND


@pytest.mark.parametrize("path", ["../escape.txt", "/etc/passwd", ".git/config", ""])
def test_paths_outside_working_tree_are_rejected(engine: ProjectsEngine, project: str, path: str) -> None:
    with pytest.raises(ProjectsError) as exc_info:
        engine.get_file(USER, project, "_", path)
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


def test_revert_file_discards_working_changes(engine: ProjectsEngine, project: str) -> None:
    commit_file(engine, project, "notes.txt", "original\n", "Add notes")
    path = write(engine, project, "notes.txt", "edited\n")

    engine.revert_file(USER, project, "notes.txt")

    assert path.read_text(encoding="utf-8") == "original\n"
    assert engine.get_status(USER, project).unstaged == []


def test_revert_untracked_file_is_not_found(engine: ProjectsEngine, project: str) -> None:
    write(engine, project, "scratch.txt", "tmp\n")
    with pytest.raises(ProjectsError) as exc_info:
        engine.revert_file(USER, project, "scratch.txt")
    assert exc_info.value.code == ErrorCode.NOT_FOUND


def test_get_files_reports_states(engine: ProjectsEngine, project: str) -> None:
    commit_file(engine, project, "kept.txt", "kept\n", "Add kept")
    commit_file(engine, project, "changed.txt", "v1\n", "Add changed")
    write(engine, project, "changed.txt", "v2\n")
    write(engine, project, "new.txt", "new\n")
    write(engine, project, "ready.txt", "ready\n")
    engine.stage_file(USER, project, ["ready.txt"])

    files = {entry.path: entry.status for entry in engine.get_files(USER, project)}

    assert files["kept.txt"] == "clean"
    assert files["project.yaml"] == "clean"
    assert files["changed.txt"] == "modified"
    assert files["new.txt"] == "untracked"
    assert files["ready.txt"] == "staged"


def test_operations_default_to_active_project(engine: ProjectsEngine, project: str) -> None:
    engine.set_active_project(USER, project)

    status = engine.get_status(USER)

    assert status.branch == "main"


def test_operations_without_project_or_active_fail(engine: ProjectsEngine, project: str) -> None:
    with pytest.raises(ProjectsError) as exc_info:
        engine.get_status("bob")
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR
