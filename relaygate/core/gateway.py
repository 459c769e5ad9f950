"""FastAPI app entry."""

from __future__ import annotations

import hmac

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from relaygate.adapters.openai_compat.mapper import error_payload
from relaygate.adapters.openai_compat.router import router as openai_router
from relaygate.adapters.openai_compat.upstream import close_upstream_async_client
from relaygate.config.settings import settings
from relaygate.core.errors import RoutingError
from relaygate.core.proof_of_work import ProofConstant, ProofOfWorkSolver
from relaygate.util.logger import logger

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,POST,PUT,PATCH,DELETE",
    "Access-Control-Allow-Headers": "Content-Type,Authorization",
}
_AUTH_EXEMPT_PATHS = frozenset({"/health"})
_NOT_FOUND_MESSAGE = "The requested endpoint was not found."
_UNAUTHORIZED_MESSAGE = "No authorization header or invalid authorization value."

app = FastAPI(title=settings.app_name)
app.include_router(openai_router, prefix="/v1")
# 进程级随机常量：启动时生成一次，显式注入求解器
app.state.proof_solver = ProofOfWorkSolver(
    ProofConstant.generate(),
    user_agent=settings.user_agent,
    max_iterations=settings.proof_max_iterations,
)


def _routing_error_response(exc: RoutingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_payload(str(exc)))


def _set_cors_headers(response: Response) -> None:
    for key, value in _CORS_HEADERS.items():
        response.headers[key] = value


def _is_authorized(request: Request) -> bool:
    expected = settings.authorization
    if not expected:
        return True
    if request.method.upper() == "OPTIONS" or request.url.path in _AUTH_EXEMPT_PATHS:
        return True
    presented = request.headers.get("authorization")
    if presented is None:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


@app.middleware("http")
async def boundary_middleware(request: Request, call_next):
    if not _is_authorized(request):
        exc = RoutingError(_UNAUTHORIZED_MESSAGE, status_code=401)
        logger.error("%s %s %s %s", request.method, request.url.path, exc.status_code, exc)
        response = _routing_error_response(exc)
    else:
        response = await call_next(request)
        logger.info("%s %s %s", request.method, request.url.path, response.status_code)
    _set_cors_headers(response)
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code in {404, 405}:
        routing_error = RoutingError(_NOT_FOUND_MESSAGE, status_code=404)
    else:
        routing_error = RoutingError(str(exc.detail), status_code=exc.status_code)
    logger.error("%s %s %s %s", request.method, request.url.path, routing_error.status_code, routing_error)
    return _routing_error_response(routing_error)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    await close_upstream_async_client()
    logger.info("upstream client closed")
