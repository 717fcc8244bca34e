"""Printer state snapshots."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional


class PrintState(str, Enum):
    """Job state as reported by the printer controller."""

    PRINTING = "printing"
    PAUSED = "paused"
    RESUMING = "resuming"
    IDLE = "idle"
    COMPLETE = "complete"
    STOPPED = "stopped"
    ERROR = "error"
    STANDBY = "standby"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "PrintState":
        if not value:
            return cls.UNKNOWN
        normalized = value.strip().lower()
        # Klipper reports "cancelled" for stopped jobs
        if normalized == "cancelled":
            return cls.STOPPED
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN


ACTIVE_STATES = frozenset({PrintState.PRINTING, PrintState.PAUSED, PrintState.RESUMING})
DONE_STATES = frozenset(
    {PrintState.IDLE, PrintState.COMPLETE, PrintState.STOPPED, PrintState.ERROR, PrintState.STANDBY}
)


@dataclass(frozen=True)
class PrinterState:
    """Immutable printer snapshot."""

    state: PrintState = PrintState.UNKNOWN
    filename: str = ""
    progress_percent: Optional[float] = None
    remaining: Optional[timedelta] = None
    current_layer: Optional[int] = None
    total_layers: Optional[int] = None
    bed_temp_actual: Optional[float] = None
    bed_temp_target: Optional[float] = None
    tool_temp_actual: Optional[float] = None
    tool_temp_target: Optional[float] = None
    observed_at: datetime = field(default_factory=datetime.now, compare=False)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_done(self) -> bool:
        return self.state in DONE_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "filename": self.filename,
            "progressPercent": self.progress_percent,
            "remainingSeconds": self.remaining.total_seconds() if self.remaining is not None else None,
            "currentLayer": self.current_layer,
            "totalLayers": self.total_layers,
            "bedTempActual": self.bed_temp_actual,
            "bedTempTarget": self.bed_temp_target,
            "toolTempActual": self.tool_temp_actual,
            "toolTempTarget": self.tool_temp_target,
        }
