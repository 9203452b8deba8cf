"""
Gate health monitor.

Checks, for every active resource, that the gate bot is an administrator
allowed to approve join requests. Reports only; activation never depends on it.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from paygate.core.database import utc_now
from paygate.core.metrics import gate_unhealthy_resources
from paygate.features.resources.service import list_active_resources
from paygate.models.access import GateHealthReport


logger = logging.getLogger("paygate.access.health")


class GateInfo(Protocol):
    def get_me(self) -> Dict[str, Any]:
        ...

    def get_chat_member(self, chat_id: int, user_id: int) -> Dict[str, Any]:
        ...


class GateHealthMonitor:
    def __init__(self, gate: GateInfo, clock=utc_now):
        self.gate = gate
        self.clock = clock
        self._bot_id: Optional[int] = None
        self.last_reports: List[GateHealthReport] = []

    def _get_bot_id(self) -> int:
        if self._bot_id is None:
            self._bot_id = int(self.gate.get_me()["id"])
        return self._bot_id

    def check_resource(self, resource_id: int, now: Optional[datetime] = None) -> GateHealthReport:
        now = now or self.clock()
        try:
            member = self.gate.get_chat_member(resource_id, self._get_bot_id())
        except Exception as exc:
            return GateHealthReport(
                resource_id=resource_id,
                healthy=False,
                issues=["Gate is unreachable or the bot is not a member"],
                checked_at=now,
                error=str(exc),
            )

        status = member.get("status")
        is_admin = status in ("administrator", "creator")
        can_invite = status == "creator" or bool(member.get("can_invite_users"))
        issues = []
        if not is_admin:
            issues.append("Bot is not an administrator")
        elif not can_invite:
            issues.append("Bot lacks the invite users privilege")
        return GateHealthReport(
            resource_id=resource_id,
            healthy=not issues,
            is_admin=is_admin,
            can_invite_users=can_invite,
            issues=issues,
            checked_at=now,
        )

    def check_all(self, now: Optional[datetime] = None) -> List[GateHealthReport]:
        now = now or self.clock()
        reports = [self.check_resource(r.resource_id, now) for r in list_active_resources()]
        unhealthy = [r for r in reports if not r.healthy]
        for report in unhealthy:
            logger.warning(
                f"Gate unhealthy: {'; '.join(report.issues)}",
                extra={"resource_id": report.resource_id, "status": "unhealthy"},
            )
        gate_unhealthy_resources.set(len(unhealthy))
        self.last_reports = reports
        return reports
