"""
Session state for karafriends.

Holds the canonical in-memory state of a karaoke session and snapshots it
to a JSON file after mutations. All mutations must hold SessionStore.lock.
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import PersistenceError
from .models import (
    AdhocLyricsEntry,
    DownloadQueueItem,
    PlaybackState,
    QueueItem,
    SongHistoryItem,
)

SNAPSHOT_FILENAME = "queue.json"


@dataclass
class Session:
    """The aggregate root of a karaoke session."""

    current_song: Optional[QueueItem] = None
    current_song_adhoc_lyrics: List[AdhocLyricsEntry] = field(default_factory=list)
    song_id_to_adhoc_lyric_lines: Dict[str, List[str]] = field(default_factory=dict)
    pitch_shift_semis: int = 0
    playback_state: PlaybackState = PlaybackState.WAITING
    song_queue: List[QueueItem] = field(default_factory=list)
    download_queue: List[DownloadQueueItem] = field(default_factory=list)
    song_history: List[SongHistoryItem] = field(default_factory=list)

    def to_snapshot(self) -> Dict[str, Any]:
        """
        Serialize the session in its persisted, reduced form.

        Nothing is playing after a restart and in-flight downloads are lost,
        so the current song goes back to the front of the queue and the
        transient fields are reset.
        """
        persisted_queue = list(self.song_queue)
        if self.current_song is not None:
            persisted_queue.insert(0, self.current_song)

        return {
            "current_song": None,
            "current_song_adhoc_lyrics": [],
            "song_id_to_adhoc_lyric_lines": {
                song_id: list(lines)
                for song_id, lines in self.song_id_to_adhoc_lyric_lines.items()
            },
            "pitch_shift_semis": 0,
            "playback_state": self.playback_state.value,
            "song_queue": [item.to_dict() for item in persisted_queue],
            "download_queue": [],
            "song_history": [entry.to_dict() for entry in self.song_history],
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "Session":
        """Build a session from a snapshot dict, using defaults for missing keys."""
        session = cls()

        if data.get("current_song"):
            session.current_song = QueueItem.from_dict(data["current_song"])
        session.current_song_adhoc_lyrics = [
            AdhocLyricsEntry.from_dict(entry)
            for entry in data.get("current_song_adhoc_lyrics", [])
        ]
        session.song_id_to_adhoc_lyric_lines = {
            song_id: list(lines)
            for song_id, lines in data.get("song_id_to_adhoc_lyric_lines", {}).items()
        }
        session.pitch_shift_semis = int(data.get("pitch_shift_semis", 0))
        session.playback_state = PlaybackState(
            data.get("playback_state", PlaybackState.WAITING.value)
        )
        session.song_queue = [
            QueueItem.from_dict(item) for item in data.get("song_queue", []) if item
        ]
        session.song_history = [
            SongHistoryItem.from_dict(entry) for entry in data.get("song_history", [])
        ]
        # In-flight downloads never survive a restart
        session.download_queue = []
        return session


class SessionStore:
    """Owns the Session and its snapshot file."""

    def __init__(self, snapshot_path: Path):
        """
        Initialize SessionStore and restore the last snapshot, if any.

        Args:
            snapshot_path: Path of the JSON snapshot file
        """
        self.logger = logging.getLogger(__name__)
        self.snapshot_path = Path(snapshot_path)
        self.lock = threading.RLock()
        self.session = self.load()

    def load(self) -> Session:
        """
        Restore the session from disk.

        A missing file means a first run. A file that cannot be read or
        decoded is moved aside so it is not overwritten, and the session
        starts from defaults.
        """
        if not self.snapshot_path.exists():
            self.logger.info("No session snapshot at %s, starting fresh", self.snapshot_path)
            return Session()

        try:
            session = self._read_snapshot()
        except PersistenceError as e:
            corrupt_path = self.snapshot_path.with_name(self.snapshot_path.name + ".corrupt")
            self.logger.error(
                "Could not restore session from %s: %s; moving it to %s",
                self.snapshot_path,
                e,
                corrupt_path,
            )
            try:
                os.replace(self.snapshot_path, corrupt_path)
            except OSError as move_error:
                self.logger.error("Failed to move corrupt snapshot aside: %s", move_error)
            return Session()

        self.logger.info(
            "Restored session: %d queued, %d in history",
            len(session.song_queue),
            len(session.song_history),
        )
        return session

    def _read_snapshot(self) -> Session:
        try:
            with open(self.snapshot_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("snapshot is not a JSON object")
            return Session.from_snapshot(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(
                f"Unreadable session snapshot: {e}",
                details={"path": str(self.snapshot_path)},
            ) from e

    def save(self) -> bool:
        """
        Write a snapshot of the current session.

        Failures are logged and skipped; the in-memory session stays
        authoritative.

        Returns:
            True if the snapshot was written
        """
        with self.lock:
            try:
                self._write_snapshot(self.session.to_snapshot())
            except PersistenceError as e:
                self.logger.error("Failed to save session snapshot: %s", e, exc_info=True)
                return False
        return True

    def _write_snapshot(self, snapshot: Dict[str, Any]) -> None:
        try:
            self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.snapshot_path.parent), prefix=".queue-", suffix=".json"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(snapshot, f, ensure_ascii=False)
                os.replace(tmp_path, self.snapshot_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"Could not write session snapshot: {e}",
                details={"path": str(self.snapshot_path)},
            ) from e
