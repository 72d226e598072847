from __future__ import annotations
import uuid

from .languages import LanguageConfig

# exit code reported for a process killed on timeout (same as coreutils `timeout`)
TIMEOUT_EXIT_CODE = 124


def new_execution_id() -> str:
    return str(uuid.uuid4())


def detect_interactive(code: str, config: LanguageConfig) -> bool:
    """Static inspection: does the source contain a blocking-read construct?"""
    return any(marker in code for marker in config.input_markers)


def normalize_exit_code(rc: int) -> int:
    # asyncio reports death-by-signal as -signum; shells report 128 + signum
    if rc < 0:
        return 128 - rc
    return rc
