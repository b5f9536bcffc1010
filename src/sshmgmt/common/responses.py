"""``{"Ok": ...}`` / ``{"Err": ...}`` response envelope for the HTTP services."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from .errors import SSHMgmtError

LOGGER = structlog.get_logger("sshmgmt.responses")


def ok(value: Any) -> dict[str, Any]:
    return {"Ok": jsonable_encoder(value)}


def err(payload: dict[str, Any], status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"Err": payload})


def _describe_validation(exc: RequestValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        problems.append(f"{location}: {error.get('msg')}")
    return "; ".join(problems)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(SSHMgmtError)
    async def handle_classified(request: Request, exc: SSHMgmtError) -> JSONResponse:
        LOGGER.info(
            "request_failed",
            path=request.url.path,
            error_type=exc.error_type,
            code=exc.code,
            raw=exc.raw_message,
        )
        return err(exc.to_payload(), exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        payload = {
            "type": "request",
            "code": 422,
            "msg": "invalid request",
            "raw_msg": _describe_validation(exc),
        }
        return err(payload, 422)

    @app.exception_handler(HTTPException)
    async def handle_http(request: Request, exc: HTTPException) -> JSONResponse:
        payload = {"type": "request", "code": exc.status_code, "msg": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content={"Err": payload}, headers=exc.headers)
