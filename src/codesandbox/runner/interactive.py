from __future__ import annotations

import asyncio
import time
from typing import Any, Dict

import structlog

from ..core.models import ExecutionSession, Status
from ..settings import Settings
from .process_runner import ProcessRunner

log = structlog.get_logger(__name__)

PROMPT_MARKERS = ("?", ":")
PROMPT_WORDS = ("input", "enter", "nhập")


def looks_like_prompt(fragment: str) -> bool:
    """
    Guess whether a program is blocked on a read, from the last line fragment it
    printed (the text after its final newline).

    This is a known heuristic, not a guarantee. Any non-blank fragment counts as a
    prompt, so a program that prints partial output without a newline and keeps
    computing is reported as waiting too. Callers must treat the flag as a hint.
    """
    if not fragment:
        return False
    lowered = fragment.lower()
    if any(m in fragment for m in PROMPT_MARKERS) or any(w in lowered for w in PROMPT_WORDS):
        return True
    return bool(fragment.strip()) and not fragment.endswith("\n")


class InteractiveBridge:
    """
    Back-and-forth exchange with a running program without waiting for it to finish.

    Output returned after each step is "whatever arrived within the settle
    window"; a program that answers later shows up in the next exchange.
    """

    def __init__(self, runner: ProcessRunner, settings: Settings):
        self.runner = runner
        self.settings = settings

    def _refresh(self, session: ExecutionSession) -> bool:
        waiting = looks_like_prompt(session.last_output_line)
        if waiting and session.has_stdin_pipe:
            session.is_interactive = True
            session.set_status(Status.WAITING_INPUT)
        return waiting

    def _finished(self, session: ExecutionSession, data: Dict[str, Any]) -> Dict[str, Any]:
        if not session.is_alive and session.exit_code is not None:
            data["exit_code"] = session.exit_code
        return data

    async def initial(self, session: ExecutionSession) -> Dict[str, Any]:
        await asyncio.sleep(self.settings.initial_settle_s)
        waiting = self._refresh(session)
        return self._finished(session, {
            "stdout": session.stdout,
            "stderr": session.stderr,
            "is_waiting_for_input": waiting,
            "waiting_prompt": session.last_output_line,
            "is_interactive": True,
            "language": session.language,
        })

    async def exchange(self, session: ExecutionSession, text: str) -> Dict[str, Any]:
        before = len(session.stdout)
        # the pending prompt is answered; only new output may raise another one
        session.last_output_line = ""
        await self.runner.write_input(session, text)
        session.deadline = time.monotonic() + self.settings.max_execution_s
        session.set_status(Status.RUNNING)
        log.debug("input_sent", execution_id=session.id, size=len(text))

        await asyncio.sleep(self.settings.input_settle_s)
        waiting = self._refresh(session)
        return self._finished(session, {
            "stdout": session.stdout[before:],
            "full_stdout": session.stdout,
            "stderr": session.stderr,
            "is_waiting_for_input": waiting,
            "waiting_prompt": session.last_output_line,
            "is_interactive": session.is_interactive,
            "language": session.language,
        })
