from __future__ import annotations

import re
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence

import structlog

from ..core.languages import LanguageConfig
from ..core.models import ExecutionSession, RunOutcome, Status, TestCase, TestResult
from ..runner.process_runner import ProcessRunner
from .storage import LocalFSStorage

log = structlog.get_logger(__name__)

# characters of context shown on each side of the first difference
DIFF_CONTEXT = 10

_LINE_ENDINGS = re.compile(r"\r\n|\r|\n")
_WHITESPACE = re.compile(r"\s+")
_TRAILING = re.compile(r"[ \t]+(\n)")
_LEADING = re.compile(r"(\n)[ \t]+")


def normalize_output(output: Optional[str]) -> str:
    """Canonical form used to compare program output: whitespace-insensitive and case-folded."""
    if not output:
        return ""
    s = output.strip()
    s = _LINE_ENDINGS.sub("\n", s)
    s = _WHITESPACE.sub(" ", s)
    s = _TRAILING.sub(r"\1", s)
    s = _LEADING.sub(r"\1", s)
    return s.strip().casefold()


def generate_diff_info(expected: str, actual: str) -> Optional[Dict[str, Any]]:
    if expected == actual:
        return None

    if len(expected) != len(actual):
        return {
            "type": "length_mismatch",
            "message": f"Expected output length: {len(expected)}, Actual output length: {len(actual)}",
            "expected_length": len(expected),
            "actual_length": len(actual),
        }

    position = next(i for i, (e, a) in enumerate(zip(expected, actual)) if e != a)
    start = max(0, position - DIFF_CONTEXT)
    end = min(len(expected), position + DIFF_CONTEXT)
    return {
        "type": "content_mismatch",
        "message": f"Outputs differ at position {position}",
        "position": position,
        "expected_context": expected[start:end],
        "actual_context": actual[start:end],
    }


def evaluate_case(case: TestCase, outcome: RunOutcome) -> TestResult:
    normalized_actual = normalize_output(outcome.stdout)
    normalized_expected = normalize_output(case.expected_output)
    passed = (
        normalized_actual == normalized_expected
        and outcome.exit_code == 0
        and outcome.stderr == ""
    )
    return TestResult(
        passed=passed,
        input=case.input,
        expected_output=case.expected_output,
        actual_output=outcome.stdout,
        normalized_actual=normalized_actual,
        normalized_expected=normalized_expected,
        error=outcome.stderr,
        exit_code=outcome.exit_code,
        execution_time_ms=outcome.elapsed_ms,
        timed_out=outcome.timed_out,
        diff_info=None if passed else generate_diff_info(normalized_expected, normalized_actual),
    )


def _unrun(case: TestCase, error: str, exit_code: Optional[int]) -> TestResult:
    return TestResult(
        passed=False,
        input=case.input,
        expected_output=case.expected_output,
        actual_output="",
        normalized_actual="",
        normalized_expected=normalize_output(case.expected_output),
        error=error,
        exit_code=exit_code,
        execution_time_ms=0,
    )


class BatteryHarness:
    """Runs one submission against a list of test cases inside a single workspace."""

    def __init__(self, runner: ProcessRunner, storage: LocalFSStorage):
        self.runner = runner
        self.storage = storage

    async def run(
        self,
        session: ExecutionSession,
        config: LanguageConfig,
        cases: Sequence[TestCase],
    ) -> Dict[str, Any]:
        total = len(cases)

        # compile once; every case shares the artifact
        if config.needs_compile:
            compiled = await self.runner.compile(session, config)
            # a compiler killed by stop is not a compile error; the loop below
            # reports every case as stopped
            if not compiled.ok and not session.status.terminal:
                error = compiled.stderr or "Compilation error"
                session.append_stderr(error)
                session.exit_code = compiled.exit_code
                session.set_status(Status.FAILED)
                log.info("battery_compile_failed", execution_id=session.id, total=total)
                return {
                    "success": False,
                    "passed_count": 0,
                    "total_count": total,
                    "results": [asdict(_unrun(c, error, compiled.exit_code)) for c in cases],
                }

        session.set_status(Status.RUNNING)
        results: List[TestResult] = []
        for index, case in enumerate(cases):
            if session.status.terminal:
                # stopped from outside while the battery was running
                results.append(_unrun(case, "Execution stopped", None))
                continue
            stdin_path = None
            if case.input:
                stdin_path = self.storage.write_stdin(session.workspace, case.input, f"input_{index}.txt")
            outcome = await self.runner.run_case(session, config, stdin_path)
            results.append(evaluate_case(case, outcome))

        passed = sum(1 for r in results if r.passed)
        if session.set_status(Status.COMPLETED):
            session.exit_code = 0
        log.info("battery_finished", execution_id=session.id, passed=passed, total=total)
        return {
            "success": True,
            "passed_count": passed,
            "total_count": total,
            "results": [asdict(r) for r in results],
        }
