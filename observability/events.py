"""
Structured JSON event emission (shared).

Used by the turn controller and the control plane. Every event is one JSON
line on stdout with a fixed envelope, and a copy is kept in the in-memory
event store so the control API can read it back.
"""

from __future__ import annotations

import json
import os
import re
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event sources."""

    TURN_CONTROLLER = "turn_controller"
    CONTROL_PLANE = "control_plane"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


_LATENCY_PATTERN = re.compile(r'("latency_ms"\s*:\s*)(\d+)')


class EventEmitter:
    """Emits structured JSON events with a stable envelope."""

    ORANGE = '\033[38;5;208m'
    RESET = '\033[0m'

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """
        Emit one event.

        Args:
            event_type: Stable event type string (e.g. "turn.started")
            session_id: Run identifier (session file name or "ephemeral")
            severity: Event severity level
            correlation_id: Turn or command id; defaults to session_id
            **kwargs: Event-specific fields

        Returns the event dict as stored.
        """
        event: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
        }
        event.update(kwargs)

        json_output = json.dumps(event, ensure_ascii=False, default=str)

        if kwargs.get("latency_ms") is not None:
            no_color = os.environ.get('NO_COLOR', '').lower() in ('1', 'true', 'yes')
            if no_color:
                replacement = r'\1\2 ms'
            else:
                replacement = rf'\1{self.ORANGE}\2 ms{self.RESET}'
            json_output = _LATENCY_PATTERN.sub(replacement, json_output)

        sys.stdout.write(json_output)
        sys.stdout.write("\n")
        sys.stdout.flush()

        # The store keeps the plain dict, without console formatting.
        event_store.store(event)
        return event
