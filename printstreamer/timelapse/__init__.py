"""Time-lapse capture and assembly."""

from printstreamer.timelapse.store import FileTimelapseStore, TimelapseStore

__all__ = ["FileTimelapseStore", "TimelapseStore"]
