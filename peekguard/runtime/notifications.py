"""
peekguard.runtime.notifications
===============================

Outbound notification boundary.

The real-time transport (websocket fan-out, message bus) lives outside the
package; the scheduler only needs something with an async `publish`. Two
message shapes are produced:

- `{"type": "summary_update", "experimentId": ..., "summary": {...}}`
- `{"type": "experiment_completed", "experimentId": ..., "winningVariant": ...}`
"""

from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

SUMMARY_UPDATE = "summary_update"
EXPERIMENT_COMPLETED = "experiment_completed"


@runtime_checkable
class NotificationChannel(Protocol):
    async def publish(self, message: Dict[str, Any]) -> None:
        ...


def summary_update(experiment_id: str, summary: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": SUMMARY_UPDATE, "experimentId": experiment_id, "summary": summary}


def experiment_completed(experiment_id: str, winning_variant: Optional[str]) -> Dict[str, Any]:
    return {
        "type": EXPERIMENT_COMPLETED,
        "experimentId": experiment_id,
        "winningVariant": winning_variant,
    }


class InMemoryChannel:
    """Collects published messages; used by tests and local runs."""

    def __init__(self) -> None:
        self.messages: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def publish(self, message: Dict[str, Any]) -> None:
        async with self._lock:
            self.messages.append(message)

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m.get("type") == message_type]
