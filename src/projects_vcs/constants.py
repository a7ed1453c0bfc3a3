"""Project-wide constants for the projects engine."""

MANIFEST_FILE_NAME = "project.yaml"
SETTINGS_DIR_NAME = ".projects"
MERGE_STATE_FILE_NAME = "projects-merge-state.yaml"

DEFAULT_BRANCH = "main"
DEFAULT_REMOTE = "origin"
DEFAULT_COMMIT_LIMIT = 20
MAX_COMMIT_LIMIT = 500

READ_CAPABILITY = "projects.read"
WRITE_CAPABILITY = "projects.write"
