"""
Access gate client (Telegram Bot API).

Only the calls the coordinator and health monitor need are implemented.
Approvals that are already satisfied on the gate side count as success.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from paygate.core.config import settings
from paygate.core.errors import GateRequestError
from paygate.core.metrics import gate_requests_total
from paygate.core.retry import send_with_retry


logger = logging.getLogger("paygate.gate")

# Descriptions meaning the approval is already in effect (or nothing is left to approve)
ALREADY_SATISFIED = ("USER_ALREADY_PARTICIPANT", "HIDE_REQUESTER_MISSING")


class TelegramGate:
    def __init__(
        self,
        token: str,
        *,
        api_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
        max_retries: int = 2,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not token:
            raise ValueError("Gate bot token is required")
        self.max_retries = max_retries
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=f"{api_url.rstrip('/')}/bot{token}",
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, cfg=None) -> "TelegramGate":
        cfg = cfg or settings
        return cls(
            cfg.GATE_BOT_TOKEN,
            api_url=cfg.GATE_API_URL,
            timeout=cfg.GATE_TIMEOUT_SECONDS,
            max_retries=cfg.GATE_MAX_RETRIES,
        )

    def close(self) -> None:
        self._client.close()

    def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        try:
            response = send_with_retry(
                lambda: self._client.post(f"/{method}", json=payload),
                max_retries=self.max_retries,
                label=f"gate {method}",
                sleep=self._sleep,
            )
        except httpx.HTTPError as exc:
            gate_requests_total.inc(labels={"method": method, "outcome": "transport_error"})
            raise GateRequestError(f"Gate call {method} failed: {exc}", retryable=True) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400 or not body.get("ok", False):
            gate_requests_total.inc(labels={"method": method, "outcome": "error"})
            description = body.get("description") or response.text[:200]
            raise GateRequestError(
                f"Gate call {method} returned {response.status_code}: {description}",
                description=description,
                retryable=response.status_code == 429 or response.status_code >= 500,
            )
        gate_requests_total.inc(labels={"method": method, "outcome": "ok"})
        return body.get("result")

    def approve_request(self, resource_id: int, subject_id: int) -> bool:
        """Approve a join request. Returns False when it was already satisfied."""
        try:
            self._call("approveChatJoinRequest", {"chat_id": resource_id, "user_id": subject_id})
        except GateRequestError as exc:
            if exc.description and any(marker in exc.description for marker in ALREADY_SATISFIED):
                logger.info(
                    f"Join request already satisfied: {exc.description}",
                    extra={"subject_id": subject_id, "resource_id": resource_id},
                )
                return False
            raise
        return True

    def send_message(self, chat_id: int, text: str, reply_markup: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        self._call("sendMessage", payload)

    def get_me(self) -> Dict[str, Any]:
        return self._call("getMe", {})

    def get_chat_member(self, chat_id: int, user_id: int) -> Dict[str, Any]:
        return self._call("getChatMember", {"chat_id": chat_id, "user_id": user_id})
