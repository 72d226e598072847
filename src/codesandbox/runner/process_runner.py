from __future__ import annotations

import asyncio
import codecs
import os
import signal
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from ..core.errors import InternalError
from ..core.languages import LanguageConfig
from ..core.models import ExecutionSession, Limits, RunOutcome, Status
from ..core.utils import TIMEOUT_EXIT_CODE, normalize_exit_code
from ..settings import Settings
from .rlimits import make_preexec

log = structlog.get_logger(__name__)

READ_CHUNK = 4096
# grace period for the output pumps once the process is gone
PUMP_DRAIN_S = 2.0

Sink = Callable[[str], None]
Pumps = List["asyncio.Task[None]"]


async def _pump(stream: asyncio.StreamReader, sink: Sink) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        text = decoder.decode(chunk)
        if text:
            sink(text)
    tail = decoder.decode(b"", final=True)
    if tail:
        sink(tail)


async def _drain(pumps: Pumps) -> None:
    if not pumps:
        return
    done, pending = await asyncio.wait(pumps, timeout=PUMP_DRAIN_S)
    for task in pending:
        task.cancel()
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            log.warning("output_pump_failed", error=repr(task.exception()))


async def _wait_until(proc: asyncio.subprocess.Process, deadline: Callable[[], float]) -> bool:
    """
    Wait for the process to exit. Returns True if the deadline passed first.

    The deadline is re-read after every wake-up so an interactive session can
    push it forward while we are waiting.
    """
    while True:
        remaining = deadline() - time.monotonic()
        if remaining <= 0:
            return proc.returncode is None
        try:
            await asyncio.wait_for(proc.wait(), timeout=remaining)
            return False
        except asyncio.TimeoutError:
            continue


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    # the child leads its own session, so its pid is also the group id
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        if proc.returncode is None:
            proc.kill()


class ProcessRunner:
    """Compiles and spawns programs inside a workspace and enforces the wall-clock limit."""

    def __init__(self, settings: Settings, limits: Optional[Limits] = None):
        self.settings = settings
        self.limits = limits or Limits.from_mapping(settings.limits)
        self._preexec = make_preexec(self.limits)
        # group ids of the programs this runner has started and not yet reaped
        self._groups: Dict[int, asyncio.subprocess.Process] = {}

    def _env(self, workdir: Path) -> Dict[str, str]:
        return {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(workdir),
            "LANG": "C.UTF-8",
            "PYTHONUNBUFFERED": "1",
            "PYTHONIOENCODING": "utf-8",
        }

    async def _launch(
        self,
        argv: List[str],
        workdir: Path,
        stdin,
        on_stdout: Sink,
        on_stderr: Sink,
        *,
        limited: bool = True,
    ) -> Tuple[asyncio.subprocess.Process, Pumps]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(workdir),
                stdin=stdin,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(workdir),
                start_new_session=True,
                preexec_fn=self._preexec if limited else None,
            )
        except OSError as e:
            raise InternalError(f"failed to start '{argv[0]}': {e}") from e
        self._groups[proc.pid] = proc
        pumps = [
            asyncio.create_task(_pump(proc.stdout, on_stdout)),
            asyncio.create_task(_pump(proc.stderr, on_stderr)),
        ]
        return proc, pumps

    def _sweep(self, proc: asyncio.subprocess.Process) -> None:
        """
        Kill whatever the reaped leader left behind in its group.

        The kernel keeps the leader's pid reserved while any straggler still
        holds it as a group id. Once the group is empty the pid may be recycled,
        so each group is swept once, right after its leader is reaped, and only
        while the pid still maps to that leader.
        """
        if self._groups.get(proc.pid) is not proc:
            return
        del self._groups[proc.pid]
        _kill_group(proc)

    async def _reap(self, proc: asyncio.subprocess.Process, pumps: Pumps, timed_out: bool) -> int:
        if timed_out:
            _kill_group(proc)
        await proc.wait()
        self._sweep(proc)
        await _drain(pumps)
        if proc.stdin is not None:
            proc.stdin.close()
        if timed_out:
            return TIMEOUT_EXIT_CODE
        return normalize_exit_code(proc.returncode)

    async def _run_captured(
        self,
        session: ExecutionSession,
        argv: List[str],
        stdin_path: Optional[Path],
        timeout_s: float,
        *,
        limited: bool,
    ) -> RunOutcome:
        out: List[str] = []
        err: List[str] = []
        start = time.monotonic()
        deadline = start + timeout_s
        handle = open(stdin_path, "rb") if stdin_path is not None else None
        try:
            proc, pumps = await self._launch(
                argv,
                session.workspace,
                handle if handle is not None else asyncio.subprocess.DEVNULL,
                out.append,
                err.append,
                limited=limited,
            )
        finally:
            if handle is not None:
                handle.close()
        session.process = proc
        session.pumps = pumps
        if session.status.terminal:
            # stopped while the process was starting
            _kill_group(proc)
        try:
            timed_out = await _wait_until(proc, lambda: deadline)
            code = await self._reap(proc, pumps, timed_out)
        finally:
            if proc.returncode is None:
                _kill_group(proc)
        return RunOutcome(
            stdout="".join(out),
            stderr="".join(err),
            exit_code=code,
            timed_out=timed_out,
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )

    # ---------- compile ----------

    async def compile(self, session: ExecutionSession, config: LanguageConfig) -> RunOutcome:
        argv = config.compile_argv(session.workspace)
        session.set_status(Status.COMPILING)
        outcome = await self._run_captured(
            session, argv, None, self.settings.compile_timeout_s, limited=False
        )
        if outcome.timed_out:
            outcome.stderr += f"\nCompilation timed out after {self.settings.compile_timeout_s:g}s\n"
        log.info(
            "compile_finished",
            execution_id=session.id,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            elapsed_ms=outcome.elapsed_ms,
        )
        return outcome

    # ---------- run (streaming into the session) ----------

    async def spawn(
        self,
        session: ExecutionSession,
        config: LanguageConfig,
        stdin_path: Optional[Path] = None,
        interactive: bool = False,
    ) -> None:
        argv = config.run_argv(session.workspace)
        handle = None
        if interactive:
            stdin = asyncio.subprocess.PIPE
        elif stdin_path is not None:
            handle = stdin = open(stdin_path, "rb")
        else:
            stdin = asyncio.subprocess.DEVNULL
        try:
            proc, pumps = await self._launch(
                argv, session.workspace, stdin, session.append_stdout, session.append_stderr
            )
        finally:
            if handle is not None:
                handle.close()
        session.process = proc
        session.pumps = pumps
        session.deadline = time.monotonic() + self.settings.max_execution_s
        session.set_status(Status.RUNNING)
        log.info("process_spawned", execution_id=session.id, pid=proc.pid, interactive=interactive)

    async def wait_for_exit(self, session: ExecutionSession) -> int:
        """Race the natural exit against ``session.deadline``; kill with 124 on expiry."""
        proc = session.process
        timed_out = await _wait_until(proc, lambda: session.deadline)
        if timed_out:
            session.timed_out = True
            log.warning(
                "execution_timeout",
                execution_id=session.id,
                timeout_s=self.settings.max_execution_s,
            )
        code = await self._reap(proc, session.pumps, timed_out)
        if session.exit_code is None:
            session.exit_code = code
        return session.exit_code

    async def write_input(self, session: ExecutionSession, text: str) -> None:
        proc = session.process
        if proc is None or proc.stdin is None or proc.returncode is not None:
            raise BrokenPipeError("process is not accepting input")
        proc.stdin.write((text + "\n").encode("utf-8"))
        await proc.stdin.drain()

    async def kill(self, session: ExecutionSession) -> None:
        """Force-kill the session's process group. Safe on a process that already exited."""
        proc = session.process
        if proc is None:
            return
        if proc.returncode is None:
            _kill_group(proc)
            log.info("process_killed", execution_id=session.id, pid=proc.pid)
        await proc.wait()
        self._sweep(proc)
        await _drain(session.pumps)
        if proc.stdin is not None:
            proc.stdin.close()
        if session.exit_code is None:
            session.exit_code = normalize_exit_code(proc.returncode)

    # ---------- test battery ----------

    async def run_case(
        self, session: ExecutionSession, config: LanguageConfig, stdin_path: Optional[Path]
    ) -> RunOutcome:
        return await self._run_captured(
            session,
            config.run_argv(session.workspace),
            stdin_path,
            self.settings.max_execution_s,
            limited=True,
        )
