"""
Command channel between the control plane and the turn controller.

Producers (the control API, tests) put commands on a thread-safe queue; the
controller drains it without blocking once per loop iteration. Nothing here
ever blocks the controller.
"""

from __future__ import annotations

import queue
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List


class CommandKind:
    STOP = "stop"
    NETWORK = "network"


@dataclass(frozen=True)
class Command:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    correlation_id: str = ""


def _new_correlation_id() -> str:
    return f"cmd_{int(time.time() * 1000)}"


class CommandChannel:
    """Unbounded multi-producer, single-consumer command queue."""

    def __init__(self) -> None:
        self._queue: "queue.Queue[Command]" = queue.Queue()

    def send(self, kind: str, **payload: Any) -> Command:
        if kind not in (CommandKind.STOP, CommandKind.NETWORK):
            raise ValueError(f"Unknown command: {kind}")
        command = Command(kind=kind, payload=payload, correlation_id=_new_correlation_id())
        self._queue.put(command)
        return command

    def request_stop(self, reason: str = "control_api") -> Command:
        return self.send(CommandKind.STOP, reason=reason)

    def report_network(self, online: bool) -> Command:
        return self.send(CommandKind.NETWORK, online=bool(online))

    def drain(self) -> List[Command]:
        """All pending commands, oldest first. Never blocks."""
        commands = []
        while True:
            try:
                commands.append(self._queue.get_nowait())
            except queue.Empty:
                return commands

    def pending(self) -> int:
        return self._queue.qsize()
