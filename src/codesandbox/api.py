from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .core.errors import (
    InternalError,
    SandboxError,
    SessionNotFound,
    UnsupportedLanguage,
    ValidationError,
    WorkspaceError,
)
from .core.models import TestCase
from .logging import setup_logging
from .services.session_manager import SessionManager
from .settings import Settings, load_settings

log = structlog.get_logger(__name__)

_HTTP_STATUS = {
    ValidationError: 400,
    UnsupportedLanguage: 400,
    SessionNotFound: 404,
    WorkspaceError: 500,
    InternalError: 500,
}


# --------- Schemas (camelCase on the wire) ---------

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TestCaseIn(CamelModel):
    __test__ = False

    input: str = ""
    expected_output: str = Field(
        "", validation_alias=AliasChoices("expectedOutput", "expected_output", "output")
    )

    def to_case(self) -> TestCase:
        return TestCase(input=self.input, expected_output=self.expected_output)


class ExecuteReq(CamelModel):
    code: str = ""
    language: str = ""
    stdin: Optional[str] = None
    test_cases: Optional[List[TestCaseIn]] = None


class ExecuteTestsReq(CamelModel):
    code: str = ""
    language: str = ""
    test_cases: List[TestCaseIn] = []


class SendInputReq(CamelModel):
    execution_id: str = ""
    input: Optional[str] = None


class StopReq(CamelModel):
    execution_id: str = ""


class DiffInfo(CamelModel):
    type: str
    message: str
    expected_length: Optional[int] = None
    actual_length: Optional[int] = None
    position: Optional[int] = None
    expected_context: Optional[str] = None
    actual_context: Optional[str] = None


class TestResultOut(CamelModel):
    __test__ = False

    passed: bool
    input: str
    expected_output: str
    actual_output: str
    normalized_actual: str
    normalized_expected: str
    error: str
    exit_code: Optional[int] = None
    execution_time_ms: int
    timed_out: bool = False
    diff_info: Optional[DiffInfo] = None


class BatteryData(CamelModel):
    passed_count: int
    total_count: int
    results: List[TestResultOut]


class RunData(CamelModel):
    stdout: str
    stderr: str
    language: str
    exit_code: Optional[int] = None
    execution_time: Optional[int] = None
    timed_out: Optional[bool] = None
    # interactive runs only
    is_waiting_for_input: Optional[bool] = None
    waiting_prompt: Optional[str] = None
    is_interactive: Optional[bool] = None


class ExecuteRes(CamelModel):
    success: bool
    execution_id: str
    data: Union[BatteryData, RunData]


class ExecuteTestsRes(CamelModel):
    success: bool
    execution_id: str
    data: BatteryData


class InputData(CamelModel):
    stdout: str
    full_stdout: str
    stderr: str
    language: str
    is_waiting_for_input: bool
    waiting_prompt: str
    is_interactive: bool
    exit_code: Optional[int] = None


class SendInputRes(CamelModel):
    success: bool
    data: InputData


class StopData(CamelModel):
    stdout: str
    stderr: str
    language: str
    exit_code: Optional[int] = None


class StopRes(CamelModel):
    success: bool
    message: str
    data: StopData


class StatusRes(CamelModel):
    execution_id: str
    language: str
    status: str
    is_interactive: bool
    is_running: bool
    exit_code: Optional[int] = None
    timed_out: bool
    stdout: str
    stderr: str
    execution_time: int


class HealthRes(CamelModel):
    status: str
    supported_languages: List[str]
    timestamp: str
    active_executions: int
    features: Dict[str, Any]


# --------- Endpoints ---------

def get_manager(request: Request) -> SessionManager:
    return request.app.state.manager


router = APIRouter(prefix="/api/code-execution")


@router.post("/execute", response_model=ExecuteRes, response_model_exclude_unset=True)
async def execute(req: ExecuteReq, mgr: SessionManager = Depends(get_manager)):
    cases = [c.to_case() for c in req.test_cases] if req.test_cases else None
    result = await mgr.start(req.code, req.language, stdin=req.stdin, test_cases=cases)
    return ExecuteRes.model_validate(result)


@router.post("/send-input", response_model=SendInputRes, response_model_exclude_unset=True)
async def send_input(req: SendInputReq, mgr: SessionManager = Depends(get_manager)):
    if not req.execution_id or req.input is None:
        raise ValidationError("Execution ID and input are required")
    return SendInputRes.model_validate(await mgr.send_input(req.execution_id, req.input))


@router.post("/stop", response_model=StopRes, response_model_exclude_unset=True)
async def stop(req: StopReq, mgr: SessionManager = Depends(get_manager)):
    if not req.execution_id:
        raise ValidationError("Execution ID is required")
    return StopRes.model_validate(await mgr.stop(req.execution_id))


@router.post("/execute-tests", response_model=ExecuteTestsRes, response_model_exclude_unset=True)
async def execute_tests(req: ExecuteTestsReq, mgr: SessionManager = Depends(get_manager)):
    result = await mgr.run_tests(req.code, req.language, [c.to_case() for c in req.test_cases])
    return ExecuteTestsRes.model_validate(result)


@router.get("/executions/{execution_id}", response_model=StatusRes)
async def execution_status(execution_id: str, mgr: SessionManager = Depends(get_manager)):
    return StatusRes.model_validate(await mgr.status(execution_id))


@router.get("/health", response_model=HealthRes)
async def health(mgr: SessionManager = Depends(get_manager)):
    return HealthRes.model_validate(mgr.health())


async def sandbox_error_handler(request: Request, exc: SandboxError) -> JSONResponse:
    status_code = _HTTP_STATUS.get(type(exc), 500)
    if status_code >= 500:
        log.error("sandbox_fault", path=request.url.path, error=str(exc), kind=type(exc).__name__)
    else:
        log.info("request_rejected", path=request.url.path, error=str(exc), kind=type(exc).__name__)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": str(exc), "error": type(exc).__name__},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # kill and purge whatever is still running before the process exits
    await app.state.manager.shutdown()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    setup_logging(settings.log_level)

    app = FastAPI(title="Code Sandbox API", lifespan=lifespan)
    app.state.settings = settings
    app.state.manager = SessionManager(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(SandboxError, sandbox_error_handler)
    app.include_router(router)
    # root-level probe for process supervisors
    app.add_api_route("/health", health, methods=["GET"], response_model=HealthRes)
    return app


app = create_app()


def main() -> None:
    s = load_settings()
    uvicorn.run("codesandbox.api:app", host=s.host, port=s.port, log_level=s.log_level.lower())


if __name__ == "__main__":
    main()
