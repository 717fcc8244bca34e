"""
Printer integration.

Components:
- PrinterState: immutable printer snapshot
- MoonrakerClient / PrinterObserver: status polling and G-code RPC
- CommandQueue: rate-limited, policy-checked command sending
- PrintOrchestrator: print-driven time-lapse and broadcast lifecycle
  (printstreamer.printer.orchestrator)
"""

from printstreamer.printer.state import ACTIVE_STATES, DONE_STATES, PrinterState, PrintState
from printstreamer.printer.moonraker import MoonrakerClient, PrinterObserver, parse_printer_state
from printstreamer.printer.command_queue import TEMPERATURE_PRESETS, CommandQueue, CommandResult

__all__ = [
    "ACTIVE_STATES",
    "DONE_STATES",
    "PrinterState",
    "PrintState",
    "MoonrakerClient",
    "PrinterObserver",
    "parse_printer_state",
    "TEMPERATURE_PRESETS",
    "CommandQueue",
    "CommandResult",
]
