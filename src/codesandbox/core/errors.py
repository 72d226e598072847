from __future__ import annotations


class SandboxError(Exception):
    """Base for every failure the sandbox surfaces to its callers."""


class ValidationError(SandboxError):
    """Missing or malformed submission (caller fault)."""


class UnsupportedLanguage(SandboxError):
    def __init__(self, language: str):
        super().__init__(f"Language '{language}' is not supported")
        self.language = language


class WorkspaceError(SandboxError):
    """Filesystem failure while preparing a workspace. Not the submitter's fault."""


class SessionNotFound(SandboxError):
    def __init__(self, execution_id: str):
        super().__init__("Execution not found or already completed")
        self.execution_id = execution_id


class InternalError(SandboxError):
    """Unexpected fault inside the sandbox, e.g. the toolchain could not be spawned."""
