from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog

from ..core.errors import SessionNotFound, ValidationError
from ..core.languages import LanguageRegistry
from ..core.models import ExecutionSession, RunOutcome, Status, TestCase
from ..core.utils import detect_interactive, new_execution_id
from ..runner.interactive import InteractiveBridge
from ..runner.process_runner import ProcessRunner
from ..settings import Settings
from .storage import LocalFSStorage
from .test_battery import BatteryHarness

log = structlog.get_logger(__name__)


class SessionRegistry:
    """Live sessions by id. Every read or write of the map holds the lock."""

    def __init__(self):
        self._sessions: Dict[str, ExecutionSession] = {}
        self._lock = asyncio.Lock()

    async def add(self, session: ExecutionSession) -> None:
        async with self._lock:
            self._sessions[session.id] = session

    async def get(self, execution_id: str) -> Optional[ExecutionSession]:
        async with self._lock:
            return self._sessions.get(execution_id)

    async def pop(self, execution_id: str) -> Optional[ExecutionSession]:
        async with self._lock:
            return self._sessions.pop(execution_id, None)

    async def drain(self) -> List[ExecutionSession]:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            return sessions

    def __len__(self) -> int:
        return len(self._sessions)


class SessionManager:
    """
    Front door of the sandbox: owns the registry and wires storage, runner,
    interactive bridge and test battery together.
    """

    def __init__(self, settings: Settings, registry: Optional[SessionRegistry] = None):
        self.settings = settings
        self.languages = LanguageRegistry.from_mapping(settings.languages)
        self.storage = LocalFSStorage(settings.temp_root)
        self.runner = ProcessRunner(settings)
        self.bridge = InteractiveBridge(self.runner, settings)
        self.battery = BatteryHarness(self.runner, self.storage)
        self.registry = registry if registry is not None else SessionRegistry()

    # ---------- helpers ----------

    @staticmethod
    def _validate(code: str, language: str) -> None:
        if not code or not language:
            raise ValidationError("Code and language are required")

    async def _open(self, code: str, language: str, interactive_hint: bool = False):
        config = self.languages.resolve(language)
        execution_id = new_execution_id()
        workspace = self.storage.create_workspace(execution_id)
        session = ExecutionSession(
            id=execution_id,
            language=config.name,
            workspace=workspace,
            is_interactive=interactive_hint and detect_interactive(code, config),
        )
        await self.registry.add(session)
        log.info(
            "execution_started",
            execution_id=execution_id,
            language=config.name,
            interactive=session.is_interactive,
        )
        return session, config

    @staticmethod
    def _settle_status(session: ExecutionSession, exit_code: int) -> None:
        if session.timed_out or exit_code != 0:
            session.set_status(Status.FAILED)
        else:
            session.set_status(Status.COMPLETED)

    async def _finalize(self, session: ExecutionSession) -> None:
        """Unregister the session, kill what is left of it and purge its workspace."""
        await self.registry.pop(session.id)
        task = session.supervisor
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if session.is_alive:
            await self.runner.kill(session)
        self.storage.cleanup(session.workspace)

    def _compile_failed(self, session: ExecutionSession, compiled: RunOutcome) -> Dict[str, Any]:
        session.append_stderr(compiled.stderr or "Compilation error")
        session.exit_code = compiled.exit_code
        session.timed_out = compiled.timed_out
        session.set_status(Status.FAILED)
        log.info("compile_failed", execution_id=session.id, exit_code=compiled.exit_code)
        return {
            "success": False,
            "execution_id": session.id,
            "data": self._batch_data(session),
        }

    @staticmethod
    def _batch_data(session: ExecutionSession) -> Dict[str, Any]:
        return {
            "stdout": session.stdout,
            "stderr": session.stderr,
            "exit_code": session.exit_code,
            "language": session.language,
            "execution_time": session.elapsed_ms,
            "timed_out": session.timed_out,
        }

    async def _supervise(self, session: ExecutionSession) -> None:
        exit_code = await self.runner.wait_for_exit(session)
        self._settle_status(session, exit_code)
        log.info(
            "execution_finished",
            execution_id=session.id,
            status=session.status.value,
            exit_code=exit_code,
            timed_out=session.timed_out,
            elapsed_ms=session.elapsed_ms,
        )
        if session.timed_out:
            await self._finalize(session)
            return
        # keep the buffers around for a late stop, then let go
        await asyncio.sleep(self.settings.retain_grace_s)
        if await self.registry.get(session.id) is session:
            log.info("execution_expired", execution_id=session.id)
            await self._finalize(session)

    # ---------- boundary operations ----------

    async def start(
        self,
        code: str,
        language: str,
        stdin: Optional[str] = None,
        test_cases: Optional[Sequence[TestCase]] = None,
    ) -> Dict[str, Any]:
        self._validate(code, language)
        if test_cases:
            return await self.run_tests(code, language, test_cases)

        session, config = await self._open(code, language, interactive_hint=not stdin)
        retained = False
        try:
            self.storage.write_source(session.workspace, config, code)
            stdin_path = self.storage.write_stdin(session.workspace, stdin) if stdin else None

            if config.needs_compile:
                compiled = await self.runner.compile(session, config)
                # a compiler killed by stop is not a compile error
                if not compiled.ok and not session.status.terminal:
                    return self._compile_failed(session, compiled)

            if session.status.terminal:
                # stopped while compiling
                return {"success": True, "execution_id": session.id, "data": self._batch_data(session)}

            await self.runner.spawn(session, config, stdin_path, interactive=session.is_interactive)
            if session.status.terminal:
                await self.runner.kill(session)
                return {"success": True, "execution_id": session.id, "data": self._batch_data(session)}

            if session.is_interactive:
                session.supervisor = asyncio.create_task(self._supervise(session))
                data = await self.bridge.initial(session)
                retained = True
                return {"success": True, "execution_id": session.id, "data": data}

            exit_code = await self.runner.wait_for_exit(session)
            self._settle_status(session, exit_code)
            log.info(
                "execution_finished",
                execution_id=session.id,
                status=session.status.value,
                exit_code=exit_code,
                timed_out=session.timed_out,
                elapsed_ms=session.elapsed_ms,
            )
            return {"success": True, "execution_id": session.id, "data": self._batch_data(session)}
        finally:
            if not retained:
                await self._finalize(session)

    async def send_input(self, execution_id: str, text: str) -> Dict[str, Any]:
        session = await self.registry.get(execution_id)
        if session is None:
            raise SessionNotFound(execution_id)
        async with session.lock:
            if session.status.terminal or not session.has_stdin_pipe:
                raise SessionNotFound(execution_id)
            try:
                data = await self.bridge.exchange(session, text)
            except (BrokenPipeError, ConnectionResetError) as e:
                raise SessionNotFound(execution_id) from e
        return {"success": True, "data": data}

    async def stop(self, execution_id: str) -> Dict[str, Any]:
        session = await self.registry.get(execution_id)
        if session is None:
            raise SessionNotFound(execution_id)
        # no session.lock here: a send_input blocked on a full stdin pipe holds
        # it, and the kill is what unblocks that writer
        if await self.registry.pop(execution_id) is None:
            # a concurrent stop got here first
            raise SessionNotFound(execution_id)
        session.set_status(Status.STOPPED)
        task = session.supervisor
        if task is not None and not task.done():
            task.cancel()
        await self.runner.kill(session)
        self.storage.cleanup(session.workspace)
        log.info("execution_stopped", execution_id=execution_id, exit_code=session.exit_code)
        return {
            "success": True,
            "message": "Execution stopped",
            "data": {
                "stdout": session.stdout,
                "stderr": session.stderr,
                "exit_code": session.exit_code,
                "language": session.language,
            },
        }

    async def status(self, execution_id: str) -> Dict[str, Any]:
        session = await self.registry.get(execution_id)
        if session is None:
            raise SessionNotFound(execution_id)
        return session.snapshot()

    async def run_tests(
        self, code: str, language: str, test_cases: Sequence[TestCase]
    ) -> Dict[str, Any]:
        self._validate(code, language)
        if not test_cases:
            raise ValidationError("Test cases must be a non-empty array")

        session, config = await self._open(code, language)
        try:
            self.storage.write_source(session.workspace, config, code)
            result = await self.battery.run(session, config, list(test_cases))
        finally:
            await self._finalize(session)
        success = result.pop("success")
        return {"success": success, "execution_id": session.id, "data": result}

    def health(self) -> Dict[str, Any]:
        compiled = [n for n in self.languages.supported if self.languages.resolve(n).needs_compile]
        return {
            "status": "healthy",
            "supported_languages": self.languages.supported,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "active_executions": len(self.registry),
            "features": {
                "interactive_input": True,
                "test_cases": True,
                "compiled_languages": compiled,
            },
        }

    async def shutdown(self) -> None:
        """Kill and purge every live session. Called once when the service exits."""
        sessions = await self.registry.drain()
        for session in sessions:
            session.set_status(Status.STOPPED)
            await self._finalize(session)
        log.info("sessions_drained", count=len(sessions))
