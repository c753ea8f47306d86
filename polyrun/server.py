"""HTTP front end.

Endpoints:
- POST /execute/sync — run code and return its output
- GET  /languages    — list registered languages
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from polyrun import __version__
from polyrun.config import config
from polyrun.logger import logger
from polyrun.sandbox import SandboxError, SandboxRunner, SandboxTimeoutError
from polyrun.schema import (
    ErrorResponse,
    ExecuteRequest,
    ExecuteResponse,
    LanguagesResponse,
)

router = APIRouter()


def get_runner(request: Request) -> SandboxRunner:
    return request.app.state.runner


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post(
    "/execute/sync",
    response_model=ExecuteResponse,
    responses={400: {"model": ErrorResponse}, 406: {"model": ErrorResponse}},
    summary="Execute code synchronously",
)
async def execute_sync(body: ExecuteRequest, request: Request):
    """Runs the submitted code and waits for it to finish.

    Returns 400 for an unsupported language or a failed run, and 406 when
    the run exceeds the execution timeout.
    """
    runner = get_runner(request)
    language = runner.find_language_by_name(body.language)
    if language is None:
        return _error(400, f"{body.language!r} is not supported")

    try:
        result = await runner.run(
            language, body.code, timeout=request.app.state.execute_timeout
        )
    except SandboxTimeoutError as e:
        logger.warning(f"Execution timed out: {e}")
        return _error(406, str(e))
    except SandboxError as e:
        logger.error(f"Execution failed: {e}")
        return _error(400, str(e))

    return ExecuteResponse.from_result(result)


@router.get("/languages", response_model=LanguagesResponse, summary="List languages")
async def list_languages(request: Request) -> LanguagesResponse:
    return LanguagesResponse(languages=get_runner(request).list_languages())


async def _validation_error_handler(request: Request, exc: RequestValidationError):
    return _error(400, str(exc.errors()))


def create_app(
    runner: Optional[SandboxRunner] = None, execute_timeout: Optional[float] = None
) -> FastAPI:
    """Creates the FastAPI application.

    Args:
        runner: Runner shared by all requests. Created on startup when None,
            which needs a reachable Docker engine.
        execute_timeout: Per-request deadline in seconds; defaults to
            ``server.execute_timeout`` from the config.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runner is None:
            app.state.runner = SandboxRunner()
        logger.info(f"Languages: {', '.join(app.state.runner.list_languages())}")
        yield

    app = FastAPI(title="polyrun", version=__version__, lifespan=lifespan)
    app.state.runner = runner
    app.state.execute_timeout = (
        execute_timeout if execute_timeout is not None else config.server.execute_timeout
    )
    app.include_router(router)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    return app
