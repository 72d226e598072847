from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


class Status(str, Enum):
    CREATED = "created"
    COMPILING = "compiling"
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def terminal(self) -> bool:
        return self in (Status.COMPLETED, Status.FAILED, Status.STOPPED)


# RUNNING and WAITING_INPUT share a rank so a session may go back and forth.
_RANK = {
    Status.CREATED: 0,
    Status.COMPILING: 1,
    Status.RUNNING: 2,
    Status.WAITING_INPUT: 2,
    Status.COMPLETED: 3,
    Status.FAILED: 3,
    Status.STOPPED: 3,
}


class InvalidTransition(Exception):
    pass


@dataclass
class Limits:
    cpu_seconds: Optional[int] = None
    memory_bytes: Optional[int] = None
    nofile: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Limits":
        def _int(key: str) -> Optional[int]:
            val = data.get(key)
            return int(val) if val is not None else None

        return cls(
            cpu_seconds=_int("cpu_seconds"),
            memory_bytes=_int("memory_bytes"),
            nofile=_int("nofile"),
        )


@dataclass(eq=False)
class ExecutionSession:
    """
    Tracked state of one submitted program run, from creation to cleanup.

    The session is the only owner of ``process``: nothing else writes its stdin
    or kills it. Buffers only ever grow.
    """

    id: str
    language: str
    workspace: Path
    is_interactive: bool = False
    status: Status = Status.CREATED
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    timed_out: bool = False
    last_output_line: str = ""
    start_time: float = field(default_factory=time.monotonic)
    deadline: float = 0.0

    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    pumps: List["asyncio.Task[None]"] = field(default_factory=list, repr=False)
    supervisor: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    # ---------- buffers ----------

    def append_stdout(self, chunk: str) -> None:
        self.stdout += chunk
        _, sep, tail = chunk.rpartition("\n")
        if sep:
            self.last_output_line = tail
        else:
            self.last_output_line += chunk

    def append_stderr(self, chunk: str) -> None:
        self.stderr += chunk

    # ---------- lifecycle ----------

    def set_status(self, new: Status) -> bool:
        """Move forward in the state machine. Returns False once the session is terminal."""
        if self.status.terminal:
            return False
        if _RANK[new] < _RANK[self.status]:
            raise InvalidTransition(f"{self.status.value} -> {new.value}")
        self.status = new
        return True

    @property
    def is_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def has_stdin_pipe(self) -> bool:
        return self.is_alive and self.process.stdin is not None

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.start_time) * 1000)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "execution_id": self.id,
            "language": self.language,
            "status": self.status.value,
            "is_interactive": self.is_interactive,
            "is_running": self.is_alive,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "execution_time": self.elapsed_ms,
        }


@dataclass(frozen=True)
class TestCase:
    input: str = ""
    expected_output: str = ""

    __test__ = False  # not a pytest class


@dataclass
class TestResult:
    passed: bool
    input: str
    expected_output: str
    actual_output: str
    normalized_actual: str
    normalized_expected: str
    error: str
    exit_code: Optional[int]
    execution_time_ms: int
    timed_out: bool = False
    diff_info: Optional[Dict[str, Any]] = None

    __test__ = False


@dataclass
class RunOutcome:
    """Captured result of one process run that did not stream into a session."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out
