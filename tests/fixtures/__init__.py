"""
Test Fixtures

Shared fakes for the broadcast provider, the video streamer and the printer.
"""

from .fakes import FakeProvider, FakeStreamer, FakeStreamerFactory, eventually, printer_state

__all__ = [
    "FakeProvider",
    "FakeStreamer",
    "FakeStreamerFactory",
    "eventually",
    "printer_state",
]
