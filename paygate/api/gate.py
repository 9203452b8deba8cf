"""Gate update intake (Telegram webhook)."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from paygate.api.deps import get_engine
from paygate.core.config import settings
from paygate.core.errors import PermissionError
from paygate.features.engine import Engine

logger = logging.getLogger("paygate")

router = APIRouter(prefix="/v1/gate", tags=["gate"])


@router.post("/updates")
def receive_update(update: Dict[str, Any], request: Request, engine: Engine = Depends(get_engine)):
    secret = settings.GATE_WEBHOOK_SECRET
    if secret and request.headers.get("X-Telegram-Bot-Api-Secret-Token") != secret:
        raise PermissionError("Invalid gate webhook secret")

    outcome = engine.coordinator.dispatch_gate_update(update)
    return {"ok": True, "outcome": outcome.value if outcome else None}
