import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

import billing.models  # noqa: F401  registers the tables on Base
from billing.config import settings
from billing.database import Base, engine
from billing.errors import (
    BillingError,
    CatalogApiException,
    DuplicateKey,
    NotFound,
    PersistenceError,
    PluginError,
    RetryableFailure,
)
from billing.routes import router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Most specific first; anything else raised by the billing layer is a bad request
ERROR_STATUSES = (
    (NotFound, 404),
    (DuplicateKey, 409),
    (PluginError, 502),
    (RetryableFailure, 503),
    (PersistenceError, 500),
    (CatalogApiException, 400),
)


def status_for(exc: BillingError) -> int:
    for error_type, status_code in ERROR_STATUSES:
        if isinstance(exc, error_type):
            return status_code
    return 400


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(BillingError)
    async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code.number})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = []
        for error in exc.errors():
            location = [str(loc) for loc in error.get("loc", []) if loc != "body"]
            message = error.get("msg", "Invalid input")
            messages.append(f"{'.'.join(location)}: {message}" if location else message)
        return JSONResponse(status_code=400, content={"detail": "; ".join(messages) or "Invalid request"})


app = FastAPI(title=settings.PROJECT_NAME)

register_exception_handlers(app)

app.include_router(router)

Base.metadata.create_all(bind=engine)
