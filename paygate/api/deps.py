from fastapi import Request

from paygate.core.errors import AppError
from paygate.features.engine import Engine


def get_engine(request: Request) -> Engine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise AppError("Service components are not initialized", code="not_ready", status_code=503)
    return engine
