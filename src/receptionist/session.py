"""
Per-call session state.

Everything that used to be module-level conversation state (interaction counter,
speaking flag, outstanding marks) lives on a CallSession owned by the turn
coordinator for the lifetime of one call.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TurnState(str, Enum):
    """Turn coordinator state."""
    IDLE = "idle"
    AGENT_SPEAKING = "agent_speaking"


@dataclass
class Utterance:
    """A finalized span of caller speech."""
    text: str
    sequence: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class Reply:
    """
    A reply produced by the dialogue engine for one turn.

    `is_final` is False for the short acknowledgement spoken while a tool call
    is in flight.
    """
    text: str
    turn_index: int
    is_final: bool = True


@dataclass
class CallSession:
    """State for one connected call."""
    session_id: str = ""
    call_sid: str = ""
    caller: str = ""
    custom_parameters: Dict[str, Any] = field(default_factory=dict)
    turn_index: int = 0
    muted: bool = False
    pending_markers: Dict[str, float] = field(default_factory=dict)  # marker -> send_time
    mark_rtt_samples: List[float] = field(default_factory=list)  # RTT samples in ms
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    is_active: bool = True

    def next_turn(self) -> int:
        """Advance to the next conversation turn."""
        self.turn_index += 1
        return self.turn_index

    def add_marker(self, name: str) -> None:
        self.pending_markers[name] = time.time()

    def resolve_marker(self, name: str) -> Optional[float]:
        """
        Remove an acknowledged marker.

        Returns:
            Round-trip time in ms, or None if the marker was not outstanding
        """
        send_time = self.pending_markers.pop(name, None)
        if send_time is None:
            return None
        rtt_ms = (time.time() - send_time) * 1000
        self.mark_rtt_samples.append(rtt_ms)
        # Keep only last 20 samples
        if len(self.mark_rtt_samples) > 20:
            self.mark_rtt_samples.pop(0)
        return rtt_ms

    @property
    def avg_mark_rtt_ms(self) -> float:
        """Average mark round-trip time in ms."""
        if not self.mark_rtt_samples:
            return 0.0
        return sum(self.mark_rtt_samples) / len(self.mark_rtt_samples)

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "call_sid": self.call_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "turns": self.turn_index,
            "pending_markers": len(self.pending_markers),
            "mark_rtt_ms": round(self.avg_mark_rtt_ms, 2),
        }
