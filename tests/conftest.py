from __future__ import annotations
import sys

import pytest
import pytest_asyncio

from codesandbox.services.session_manager import SessionManager
from codesandbox.settings import Settings

# test programs are Python, run with the interpreter that runs the tests
PYTHON_RUN = [sys.executable, "-u", "{source}"]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        temp_root=tmp_path / "executions",
        max_execution_s=5.0,
        compile_timeout_s=10.0,
        initial_settle_s=0.8,
        input_settle_s=0.8,
        retain_grace_s=5.0,
        languages={"python": {"run": PYTHON_RUN}},
    )


@pytest.fixture
def compiled_settings(settings):
    # byte-compiling stands in for a real compiler step
    return settings.model_copy(update={
        "languages": {"python": {
            "run": PYTHON_RUN,
            "compile": [sys.executable, "-m", "py_compile", "{source}"],
        }},
    })


@pytest_asyncio.fixture
async def manager(settings):
    mgr = SessionManager(settings)
    yield mgr
    await mgr.shutdown()


@pytest_asyncio.fixture
async def compiled_manager(compiled_settings):
    mgr = SessionManager(compiled_settings)
    yield mgr
    await mgr.shutdown()
