"""Translation of domain exceptions into HTTP responses."""

from typing import NoReturn

from fastapi import Request
from fastapi.responses import JSONResponse

from ..core.exceptions import DomainException


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    raise exc.to_http_exception() from exc


async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
    """App-level fallback for domain exceptions raised outside a route's own handling."""
    http_exc = exc.to_http_exception()
    return JSONResponse(
        status_code=http_exc.status_code,
        content={"detail": http_exc.detail},
        headers=http_exc.headers,
    )
