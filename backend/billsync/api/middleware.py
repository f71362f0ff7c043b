"""Middleware for the FastAPI application.

This module contains middleware that process requests and responses, and the
exception handlers that map domain exceptions onto HTTP status codes.
"""

import asyncio
import time
import traceback
import uuid

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from billsync.core.config import settings
from billsync.core.exceptions import ExternalServiceError, InvalidStateError, NotFoundException
from billsync.core.logging import logger


async def add_request_id(request: Request, call_next: callable) -> Response:
    """Middleware to generate and add a request ID to the request for tracing.

    Args:
    ----
        request (Request): The incoming request.
        call_next (callable): The next middleware in the chain.

    Returns:
    -------
        Response: The response to the incoming request.

    """
    request.state.request_id = str(uuid.uuid4())
    response = await call_next(request)
    response.headers["X-Request-ID"] = request.state.request_id
    return response


async def log_requests(request: Request, call_next: callable) -> Response:
    """Middleware to log incoming requests."""
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time
    logger.with_context(request_id=getattr(request.state, "request_id", None)).info(
        f"Handled request {request.method} {request.url.path} in {duration:.2f} seconds. "
        f"Response code: {response.status_code}"
    )
    return response


async def exception_logging_middleware(request: Request, call_next: callable) -> Response:
    """Middleware to log unhandled exceptions.

    The response body names the exception only in debug mode; callers never
    see downstream error details otherwise.
    """
    try:
        return await call_next(request)
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}\n{traceback.format_exc()}")

        response_content = {"detail": "Internal Server Error"}
        if settings.DEBUG:
            response_content["detail"] = f"Internal Server Error: {exc.__class__.__name__}: {exc}"
            response_content["trace"] = traceback.format_exc()

        return JSONResponse(status_code=500, content=response_content)


async def request_timeout_middleware(request: Request, call_next: callable) -> Response:
    """Middleware to enforce request timeout.

    Wraps request processing in asyncio.wait_for() to prevent long-running requests
    from tying up resources.

    Returns:
    -------
        Response: The response to the incoming request or 504 on timeout.

    """
    try:
        return await asyncio.wait_for(
            call_next(request), timeout=settings.API_REQUEST_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.warning(
            f"Request timeout after {settings.API_REQUEST_TIMEOUT_SECONDS}s: "
            f"{request.method} {request.url.path}"
        )
        return JSONResponse(
            status_code=504,
            content={
                "detail": f"Request timeout after {settings.API_REQUEST_TIMEOUT_SECONDS} seconds"
            },
        )


async def not_found_exception_handler(request: Request, exc: NotFoundException) -> JSONResponse:
    """Exception handler for NotFoundException.

    Returns:
    -------
        JSONResponse: A 404 Not Found status response that details the error message.

    """
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def invalid_state_exception_handler(request: Request, exc: InvalidStateError) -> JSONResponse:
    """Exception handler for InvalidStateError.

    Returns:
    -------
        JSONResponse: A 400 Bad Request status response that details the error message.

    """
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def external_service_exception_handler(
    request: Request, exc: ExternalServiceError
) -> JSONResponse:
    """Exception handler for ExternalServiceError: the provider failed, not the caller."""
    logger.warning(f"External service error: {exc}")
    return JSONResponse(
        status_code=502, content={"detail": f"{exc.service_name} is unavailable"}
    )
