"""FastAPI application factory.

Usage:
    uvicorn shipyard.main:app
"""

from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse

from shipyard.sandbox import SandboxNotFoundError
from shipyard.sandbox.agent_client import AgentClientError
from shipyard.server.build_api import router as build_router
from shipyard.utils.logger import setup_logger

logger = setup_logger()


def sandbox_not_found_handler(
    request: Request, exc: SandboxNotFoundError
) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def agent_client_error_handler(
    request: Request, exc: AgentClientError
) -> JSONResponse:
    logger.warning(f"Sandbox agent call failed for {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": str(exc)})


def get_application() -> FastAPI:
    application = FastAPI(
        title="Shipyard",
        description="Per-session sandboxes and the plan/build agent",
    )

    application.add_exception_handler(SandboxNotFoundError, sandbox_not_found_handler)
    application.add_exception_handler(AgentClientError, agent_client_error_handler)

    application.include_router(build_router)

    @application.get("/health")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    return application


app = get_application()
