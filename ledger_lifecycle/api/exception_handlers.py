"""Exception handlers mapping application errors to JSON responses."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ledger_lifecycle.core.exceptions import LedgerLifecycleError
from ledger_lifecycle.core.logging import get_logger

logger = get_logger(__name__)


async def ledger_lifecycle_exception_handler(
    request: Request,
    exc: LedgerLifecycleError,
) -> JSONResponse:
    """Convert LedgerLifecycleError and its subclasses to ``{"error": {...}}`` responses."""
    log_context = {
        "error_code": exc.error_code,
        "status_code": exc.status_code,
        "path": str(request.url.path),
        "method": request.method,
    }
    if exc.status_code >= 500:
        logger.error(f"Internal error: {exc.message}", extra=log_context)
    else:
        logger.info(f"Client error: {exc.message}", extra=log_context)

    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LedgerLifecycleError, ledger_lifecycle_exception_handler)  # type: ignore[arg-type]
