"""
Background music library.

Scans a folder for audio files and tracks what plays next: an explicit FIFO
queue requested by the operator, and a rotation over the library that
honors shuffle and repeat.
"""

import logging
import random
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".mp3", ".aac", ".m4a", ".wav", ".flac", ".ogg", ".opus"}


class RepeatMode(str, Enum):
    """Repeat behavior of the rotation."""
    OFF = "off"
    ONE = "one"
    ALL = "all"


@dataclass
class AudioTrack:
    """A track in the library."""
    name: str
    path: str


@dataclass
class LibraryState:
    """Snapshot of the library for status endpoints."""
    is_playing: bool
    current: Optional[str]
    queue: list[str] = field(default_factory=list)
    shuffle: bool = False
    repeat: RepeatMode = RepeatMode.OFF

    def to_dict(self) -> dict[str, Any]:
        return {
            "isPlaying": self.is_playing,
            "current": self.current,
            "queue": list(self.queue),
            "shuffle": self.shuffle,
            "repeat": self.repeat.value,
        }


class AudioLibrary:
    """
    Track queue, shuffle and repeat state.

    Methods are guarded by a lock because operator endpoints may call them
    from worker threads.
    """

    def __init__(self, folder: str = "audio", rng: Optional[random.Random] = None):
        self._lock = threading.RLock()
        self._rng = rng or random.Random()
        self._folder = Path(folder).expanduser().resolve()
        self._tracks: list[AudioTrack] = []
        self._queue: list[str] = []
        self._cursor: Optional[int] = None
        self._current: Optional[str] = None
        self._playing = False
        self._shuffle = False
        self._repeat = RepeatMode.OFF

        self._ensure_folder()
        self.rescan()

    @property
    def folder(self) -> str:
        with self._lock:
            return str(self._folder)

    @property
    def tracks(self) -> list[AudioTrack]:
        with self._lock:
            return list(self._tracks)

    @property
    def current_path(self) -> Optional[str]:
        with self._lock:
            return self._current

    @property
    def is_playing(self) -> bool:
        with self._lock:
            return self._playing

    def set_folder(self, folder: str) -> None:
        """Point the library at another folder and rescan."""
        if not folder or not folder.strip():
            return
        with self._lock:
            self._folder = Path(folder).expanduser().resolve()
            self._ensure_folder()
        logger.info(f"Audio folder set to {self._folder}")
        self.rescan()

    def rescan(self) -> int:
        """Reload the track list. Returns the number of tracks found."""
        found: list[AudioTrack] = []
        try:
            if self._folder.is_dir():
                for entry in self._folder.iterdir():
                    if entry.is_file() and entry.suffix.lower() in SUPPORTED_EXTENSIONS:
                        found.append(AudioTrack(name=entry.stem, path=str(entry)))
        except OSError as e:
            logger.warning(f"Failed to scan audio folder {self._folder}: {e}")

        found.sort(key=lambda t: t.name.lower())

        with self._lock:
            self._tracks = found
            if self._current is not None:
                paths = [t.path for t in found]
                self._cursor = paths.index(self._current) if self._current in paths else None
            else:
                self._cursor = None

        logger.info(f"Audio library scanned: {len(found)} tracks in {self._folder}")
        return len(found)

    def get_state(self) -> LibraryState:
        with self._lock:
            return LibraryState(
                is_playing=self._playing,
                current=Path(self._current).name if self._current else None,
                queue=[Path(p).name for p in self._queue],
                shuffle=self._shuffle,
                repeat=self._repeat,
            )

    def enqueue(self, *names: str) -> int:
        """Queue tracks by name (case-insensitive). Returns how many were queued."""
        added = 0
        with self._lock:
            by_name = {t.name.lower(): t.path for t in self._tracks}
            for name in names:
                path = by_name.get(Path(name).stem.lower()) or by_name.get(name.lower())
                if path:
                    self._queue.append(path)
                    added += 1
        return added

    def remove_from_queue(self, index: int) -> bool:
        with self._lock:
            if 0 <= index < len(self._queue):
                self._queue.pop(index)
                return True
            return False

    def clear_queue(self) -> None:
        with self._lock:
            self._queue.clear()

    def play(self) -> None:
        with self._lock:
            self._playing = True

    def pause(self) -> None:
        with self._lock:
            self._playing = False

    def toggle(self) -> bool:
        with self._lock:
            self._playing = not self._playing
            return self._playing

    def set_shuffle(self, enabled: bool) -> None:
        with self._lock:
            self._shuffle = enabled

    def set_repeat(self, mode: RepeatMode) -> None:
        with self._lock:
            self._repeat = mode

    def select_track(self, name: str) -> Optional[str]:
        """Make a track current by name. Returns its path or None."""
        with self._lock:
            for index, track in enumerate(self._tracks):
                if track.name.lower() == Path(name).stem.lower():
                    self._cursor = index
                    self._current = track.path
                    self._playing = True
                    return track.path
        return None

    def try_consume_queue(self) -> Optional[str]:
        """Pop the next explicitly queued track and make it current."""
        with self._lock:
            if not self._queue:
                return None
            path = self._queue.pop(0)
            self._current = path
            self._playing = True
            return path

    def try_get_next_track(self) -> Optional[str]:
        """
        Advance the rotation and make the result current.

        Repeat one keeps the cursor, shuffle picks a random index, and
        otherwise the cursor moves forward, wrapping only with repeat all.
        """
        with self._lock:
            if not self._tracks:
                return None

            if self._cursor is None:
                self._cursor = 0
            elif self._repeat != RepeatMode.ONE:
                if self._shuffle:
                    self._cursor = self._rng.randrange(len(self._tracks))
                elif self._cursor + 1 < len(self._tracks):
                    self._cursor += 1
                elif self._repeat == RepeatMode.ALL:
                    self._cursor = 0
                else:
                    return None

            path = self._tracks[self._cursor].path
            self._current = path
            self._playing = True
            return path

    def try_select_random_track(self) -> Optional[str]:
        """Pick any track at random and make it current."""
        with self._lock:
            if not self._tracks:
                return None
            self._cursor = self._rng.randrange(len(self._tracks))
            path = self._tracks[self._cursor].path
            self._current = path
            self._playing = True
            return path

    def _ensure_folder(self) -> None:
        try:
            self._folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Cannot create audio folder {self._folder}: {e}")
