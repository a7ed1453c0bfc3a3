"""Pydantic models for projects engine inputs and outputs."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import DEFAULT_COMMIT_LIMIT, MAX_COMMIT_LIMIT
from .errors import ErrorCode, ProjectsError

PROJECT_ID_PATTERN = r"^[A-Za-z0-9_-]+$"
REMOTE_NAME_PATTERN = r"^[A-Za-z0-9._-]+$"

METADATA_KEYS = (
    "credential_secret",
    "credentialSecret",
    "description",
    "dependencies",
    "summary",
    "files",
    "git",
)


class DiffType(str, Enum):
    UNSTAGED = "unstaged"
    STAGED = "staged"
    COMMIT = "commit"


class Resolution(str, Enum):
    OURS = "ours"
    THEIRS = "theirs"
    MANUAL = "manual"


class PullResult(str, Enum):
    UP_TO_DATE = "up_to_date"
    FAST_FORWARD = "fast_forward"
    MERGED = "merged"
    CONFLICTS = "conflicts"


class UpdateIntent(str, Enum):
    ACTIVATE = "activate"
    INITIALISE = "initialise"
    METADATA = "metadata"


class GitUser(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)


class RemoteUrl(BaseModel):
    url: str = Field(..., min_length=1)


class ProjectGitSettings(BaseModel):
    user: GitUser | None = None
    remotes: dict[str, RemoteUrl] = Field(default_factory=dict)


class ProjectFile(BaseModel):
    role: str = Field(..., min_length=1, max_length=50)
    path: str = Field(..., min_length=1, max_length=500)


class CreateProjectRequest(BaseModel):
    id: str = Field(..., min_length=1, max_length=64, pattern=PROJECT_ID_PATTERN)
    description: str = Field(default="", max_length=1000)
    summary: str = Field(default="", max_length=200)
    dependencies: dict[str, str] = Field(default_factory=dict)
    files: list[ProjectFile] = Field(default_factory=list)
    git: ProjectGitSettings = Field(default_factory=ProjectGitSettings)
    credential_secret: str | None = None

    @field_validator("files")
    @classmethod
    def _unique_file_roles(cls, value: list[ProjectFile]) -> list[ProjectFile]:
        roles = [item.role for item in value]
        if len(roles) != len(set(roles)):
            raise ValueError("file roles must be unique")
        return value


class ProjectMetadataPatch(BaseModel):
    description: str | None = Field(default=None, max_length=1000)
    summary: str | None = Field(default=None, max_length=200)
    dependencies: dict[str, str] | None = None
    files: list[ProjectFile] | None = None
    git: ProjectGitSettings | None = None
    credential_secret: str | None = None
    current_credential_secret: str | None = None


class ProjectUpdateRequest(BaseModel):
    """Tagged update request: exactly one intent is carried per request."""

    intent: UpdateIntent
    patch: ProjectMetadataPatch | None = None

    @model_validator(mode="after")
    def _patch_matches_intent(self) -> "ProjectUpdateRequest":
        if self.intent == UpdateIntent.METADATA and self.patch is None:
            raise ValueError("metadata updates require a patch")
        if self.intent != UpdateIntent.METADATA and self.patch is not None:
            raise ValueError("patch is only allowed for metadata updates")
        return self

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> "ProjectUpdateRequest":
        """Classify a raw update body into a single intent."""
        intents: list[UpdateIntent] = []
        if body.get("active"):
            intents.append(UpdateIntent.ACTIVATE)
        if body.get("initialise"):
            intents.append(UpdateIntent.INITIALISE)
        if any(key in body for key in METADATA_KEYS):
            intents.append(UpdateIntent.METADATA)

        if len(intents) != 1:
            raise ProjectsError(
                ErrorCode.VALIDATION_ERROR,
                "invalid_request",
                "Send exactly one of: active, initialise, or metadata fields.",
                {"intents": [intent.value for intent in intents]},
            )

        intent = intents[0]
        if intent != UpdateIntent.METADATA:
            return cls(intent=intent)

        patch_body = {key: value for key, value in body.items() if key not in {"active", "initialise"}}
        if "credentialSecret" in patch_body:
            patch_body["credential_secret"] = patch_body.pop("credentialSecret")
        if "currentCredentialSecret" in patch_body:
            patch_body["current_credential_secret"] = patch_body.pop("currentCredentialSecret")
        return cls(intent=intent, patch=ProjectMetadataPatch(**patch_body))


class CommitRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=5000)

    @field_validator("message")
    @classmethod
    def _message_not_blank(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("message must not be blank")
        return stripped


class CommitsRequest(BaseModel):
    limit: int = Field(default=DEFAULT_COMMIT_LIMIT, ge=1, le=MAX_COMMIT_LIMIT)
    before: str | None = None


class BranchRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    create: bool = False


class ResolveRequest(BaseModel):
    path: str = Field(..., min_length=1)
    resolution: Resolution
    content: str | None = None


class RemoteSpec(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, pattern=REMOTE_NAME_PATTERN)
    url: str | None = None
    push_url: str | None = None


class PushRequest(BaseModel):
    remote: str | None = None
    refspec: str | None = None
    track: bool = False


class PullRequest(BaseModel):
    remote: str | None = None
    refspec: str | None = None
    track: bool = False
    allow_unrelated_histories: bool = False


class MergeState(BaseModel):
    conflicted_paths: list[str] = Field(default_factory=list)
    resolutions: dict[str, Resolution] = Field(default_factory=dict)
    pre_merge_head: str
    merge_head: str
    remote_ref: str = ""
    unrelated: bool = False


class Project(BaseModel):
    id: str
    path: str
    active: bool = False
    initialised: bool = False
    description: str = ""
    summary: str = ""
    dependencies: dict[str, str] = Field(default_factory=dict)
    files: list[ProjectFile] = Field(default_factory=list)
    git: ProjectGitSettings = Field(default_factory=ProjectGitSettings)
    credential_secret_set: bool = False
    branch: str | None = None
    created_at: str = ""


class ProjectList(BaseModel):
    projects: list[str] = Field(default_factory=list)
    active: str | None = None


class StatusResponse(BaseModel):
    branch: str | None = None
    head: str | None = None
    staged: list[str] = Field(default_factory=list)
    unstaged: list[str] = Field(default_factory=list)
    untracked: list[str] = Field(default_factory=list)
    conflicted: list[str] = Field(default_factory=list)
    merge_state: MergeState | None = None
    upstream: str | None = None
    ahead: int | None = None
    behind: int | None = None


class FileEntry(BaseModel):
    path: str
    status: Literal["clean", "modified", "staged", "untracked", "deleted", "conflicted"]


class CommitAuthor(BaseModel):
    name: str = ""
    email: str = ""


class CommitSummary(BaseModel):
    sha: str
    short_sha: str
    parents: list[str] = Field(default_factory=list)
    author: CommitAuthor = Field(default_factory=CommitAuthor)
    title: str = ""
    message: str = ""
    timestamp: str = ""
    refs: list[str] = Field(default_factory=list)
    changed_paths: list[str] = Field(default_factory=list)


class CommitDetail(CommitSummary):
    patch: str = ""


class CommitList(BaseModel):
    commits: list[CommitSummary] = Field(default_factory=list)
    count: int = 0
    total: int = 0


class BranchInfo(BaseModel):
    name: str
    is_remote: bool = False
    current: bool = False
    commit: str | None = None
    upstream: str | None = None


class BranchStatus(BaseModel):
    local: str
    remote: str
    ahead: int = 0
    behind: int = 0


class RemoteInfo(BaseModel):
    name: str
    url: str = ""
    push_url: str = ""
    fetch_refspec: str = ""
    push_refspec: str = ""


class OperationResponse(BaseModel):
    status: Literal["success", "error"] = "success"
    message: str = ""


class CommitResponse(OperationResponse):
    sha: str = ""
    branch: str | None = None
    merge_completed: bool = False


class PushResponse(OperationResponse):
    remote: str = ""
    branch: str = ""
    tracking: bool = False


class PullResponse(OperationResponse):
    result: PullResult = PullResult.UP_TO_DATE
    remote_ref: str = ""
    head: str = ""
    merge_state: MergeState | None = None
