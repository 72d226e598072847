from __future__ import annotations
import resource
from typing import Callable, Optional

from ..core.models import Limits


def apply_rlimits(cpu_seconds: Optional[int], memory_bytes: Optional[int], nofile: Optional[int]) -> None:
    """
    Process-level limits: CPU time, address space, open file descriptors.
    Unset limits are left alone; a limit the OS refuses keeps its default.
    """
    for which, value in (
        (resource.RLIMIT_CPU, cpu_seconds),
        (resource.RLIMIT_AS, memory_bytes),
        (resource.RLIMIT_NOFILE, nofile),
    ):
        if not value:
            continue
        try:
            resource.setrlimit(which, (value, value))
        except (ValueError, OSError):
            pass


def make_preexec(limits: Limits) -> Optional[Callable[[], None]]:
    """Build the hook run in the child between fork and exec, or None if nothing is limited."""
    if not (limits.cpu_seconds or limits.memory_bytes or limits.nofile):
        return None

    def _preexec() -> None:
        apply_rlimits(limits.cpu_seconds, limits.memory_bytes, limits.nofile)

    return _preexec
