"""
FastAPI pieces shared by the services: error mapping and the health payload.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .broker import Broker
from .config import Settings
from .errors import InvalidRequest, OrderflowError
from .observability import Counters

logger = logging.getLogger(__name__)


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(OrderflowError)
    async def orderflow_error(request: Request, exc: OrderflowError):
        if exc.status_code >= 500:
            logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        error = InvalidRequest("Request body is invalid", errors=_describe(exc))
        return JSONResponse(status_code=error.status_code, content=error.to_dict())


def _describe(exc: RequestValidationError) -> list[str]:
    return [
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}"
        for err in exc.errors()
    ]


def health_payload(settings: Settings, broker: Broker, counters: Counters) -> dict:
    return {
        "status": "ok",
        "service": settings.service_name,
        "instance": settings.instance_id,
        "broker": "connected" if broker.connected else "disconnected",
        "counters": counters.snapshot(),
    }
