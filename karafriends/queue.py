"""
Queue management for karafriends.

Owns every operation that changes the session: queuing requests from each
song source, popping the next song, removals, adhoc lyrics, pitch shift,
playback state and emotes. Each mutation publishes its events and, where
the change should survive a restart, snapshots the session.
"""

import logging
import time
from typing import Any, List, Optional

from .acquisition import AcquisitionPipeline
from .admission import AdmissionControl
from .events import EventBus, Topic
from .models import (
    AdhocLyricsEntry,
    Connection,
    DamQueueItem,
    DownloadQueueItem,
    DownloadType,
    Edge,
    Emote,
    JoysoundQueueItem,
    NicoQueueItem,
    PageInfo,
    PlaybackState,
    QueueItem,
    QueueSongError,
    QueueSongInfo,
    QueueSongResult,
    SongHistoryItem,
    UserIdentity,
    YoutubeQueueItem,
)
from .session import SessionStore


def make_timestamp() -> str:
    """Submission timestamp: milliseconds since the epoch, as a string."""
    return str(int(time.time() * 1000))


class QueueManager:
    """Manages the song queue, the download queue and the rest of the session."""

    def __init__(
        self,
        store: SessionStore,
        event_bus: EventBus,
        admission: AdmissionControl,
        pipeline: AcquisitionPipeline,
    ):
        """
        Initialize QueueManager.

        Args:
            store: SessionStore holding the session and its snapshot file
            event_bus: EventBus to publish changes on
            admission: AdmissionControl for quota checks
            pipeline: AcquisitionPipeline that makes requests playable
        """
        self.store = store
        self.event_bus = event_bus
        self.admission = admission
        self.pipeline = pipeline
        self.logger = logging.getLogger(__name__)

    @property
    def session(self):
        return self.store.session

    # =========================================================================
    # Helpers
    # =========================================================================

    def _queued_playtime(self) -> int:
        """Playtime of the current song plus everything in the queue."""
        current = (self.session.current_song.playtime or 0) if self.session.current_song else 0
        return current + sum(item.playtime or 0 for item in self.session.song_queue)

    def _publish_queue_changed(self) -> None:
        self.event_bus.publish(
            Topic.QUEUE_CHANGED,
            {
                "current_song": self.session.current_song.to_dict()
                if self.session.current_song
                else None,
                "new_queue": [item.to_dict() for item in self.session.song_queue],
            },
        )

    def _publish_adhoc_lyrics_changed(self) -> None:
        self.event_bus.publish(
            Topic.ADHOC_LYRICS_CHANGED,
            [entry.to_dict() for entry in self.session.current_song_adhoc_lyrics],
        )

    # =========================================================================
    # Queuing
    # =========================================================================

    def push_song_to_queue(self, item: QueueItem, push_to_head: bool = False) -> QueueSongResult:
        """
        Make an item visible in the queue.

        Privileged requests go second rather than first: the song at the
        front may already be downloading or about to play.

        Returns:
            QueueSongInfo with the playtime ahead of the item
        """
        with self.store.lock:
            eta = self._queued_playtime()

            self.logger.info(
                "Queuing %s %s (%s) for %s with an eta of %ds; push_to_head=%s",
                item.source_type,
                item.song_id,
                item.name,
                item.user_identity.nickname,
                eta,
                push_to_head,
            )

            if push_to_head:
                self.session.song_queue.insert(1, item)
            else:
                self.session.song_queue.append(item)

            self._publish_queue_changed()
            self.event_bus.publish(Topic.QUEUE_ADDED, item.to_dict())
            self.store.save()

        return QueueSongInfo(eta=eta)

    def queue_song(
        self, item: QueueItem, try_head_of_queue: bool = False, **options: Any
    ) -> QueueSongResult:
        """
        Admit a request and start acquiring it.

        Args:
            item: The new queue item
            try_head_of_queue: Ask for privileged insertion (ignored for
                non-privileged users)
            options: Source-specific acquisition options

        Returns:
            QueueSongError if the user is over their limit; otherwise
            QueueSongInfo, which for downloaded sources is an optimistic
            estimate that assumes the download will succeed
        """
        with self.store.lock:
            if self.admission.has_max_songs_in_queue(item.user_identity):
                reason = self.admission.rejection_reason(item.user_identity)
                self.logger.info("Rejected %s: %s", item.song_id, reason)
                return QueueSongError(reason=reason)

            push_to_head = try_head_of_queue and self.admission.can_push_to_head_of_queue(
                item.user_identity
            )
            optimistic_eta = self._queued_playtime() + (item.playtime or 0)

            result = self.pipeline.acquire(item, push_to_head, self.push_song_to_queue, **options)

        if result is None:
            return QueueSongInfo(eta=optimistic_eta)
        return result

    def queue_dam_song(
        self,
        user_identity: UserIdentity,
        song_id: str,
        name: str,
        artist_name: str,
        streaming_url_idx: str = "0",
        playtime: Optional[int] = None,
        try_head_of_queue: bool = False,
    ) -> QueueSongResult:
        item = DamQueueItem(
            song_id=song_id,
            name=name,
            artist_name=artist_name,
            timestamp=make_timestamp(),
            user_identity=user_identity,
            playtime=playtime,
            streaming_url_idx=streaming_url_idx,
        )
        return self.queue_song(item, try_head_of_queue)

    def queue_joysound_song(
        self,
        user_identity: UserIdentity,
        song_id: str,
        name: str,
        artist_name: str,
        is_romaji: bool = False,
        youtube_video_id: Optional[str] = None,
        playtime: Optional[int] = None,
        try_head_of_queue: bool = False,
    ) -> QueueSongResult:
        item = JoysoundQueueItem(
            song_id=song_id,
            name=name,
            artist_name=artist_name,
            timestamp=make_timestamp(),
            user_identity=user_identity,
            playtime=playtime,
            is_romaji=is_romaji,
            youtube_video_id=youtube_video_id,
        )
        return self.queue_song(item, try_head_of_queue)

    def queue_youtube_song(
        self,
        user_identity: UserIdentity,
        song_id: str,
        name: str,
        artist_name: str,
        adhoc_song_lyrics: str = "",
        caption_code: Optional[str] = None,
        gain_value: float = 1.0,
        playtime: Optional[int] = None,
        try_head_of_queue: bool = False,
    ) -> QueueSongResult:
        item = YoutubeQueueItem(
            song_id=song_id,
            name=name,
            artist_name=artist_name,
            timestamp=make_timestamp(),
            user_identity=user_identity,
            playtime=playtime,
            has_adhoc_lyrics=bool(adhoc_song_lyrics),
            has_captions=bool(caption_code),
            gain_value=gain_value,
        )
        return self.queue_song(
            item,
            try_head_of_queue,
            adhoc_song_lyrics=adhoc_song_lyrics,
            caption_code=caption_code,
        )

    def queue_nico_song(
        self,
        user_identity: UserIdentity,
        song_id: str,
        name: str,
        artist_name: str,
        playtime: Optional[int] = None,
        try_head_of_queue: bool = False,
    ) -> QueueSongResult:
        item = NicoQueueItem(
            song_id=song_id,
            name=name,
            artist_name=artist_name,
            timestamp=make_timestamp(),
            user_identity=user_identity,
            playtime=playtime,
        )
        return self.queue_song(item, try_head_of_queue)

    # =========================================================================
    # Playback
    # =========================================================================

    def pop_song(self) -> Optional[QueueItem]:
        """
        Move the front of the queue to the current song.

        Returns:
            The new current song, or None if the queue was empty
        """
        with self.store.lock:
            session = self.session
            new_song = session.song_queue.pop(0) if session.song_queue else None

            session.current_song_adhoc_lyrics = []
            outgoing = session.current_song
            if isinstance(outgoing, YoutubeQueueItem) and outgoing.has_adhoc_lyrics:
                session.song_id_to_adhoc_lyric_lines.pop(outgoing.song_id, None)
            self._publish_adhoc_lyrics_changed()

            session.current_song = new_song
            self.event_bus.publish(
                Topic.CURRENT_SONG_CHANGED, new_song.to_dict() if new_song else None
            )
            self._publish_queue_changed()

            if new_song is not None:
                previous = session.song_history[0].song if session.song_history else None
                if previous is None or previous.identity() != new_song.identity():
                    session.song_history.insert(0, SongHistoryItem(song=new_song))

            self.store.save()

        if new_song:
            self.logger.info("Now playing %s (%s)", new_song.song_id, new_song.name)
        else:
            self.logger.info("Queue is empty, nothing to play")
        return new_song

    def remove_song(self, song_id: str, timestamp: str) -> bool:
        """
        Remove the first queue entry matching song_id and timestamp.

        A missing entry is not an error, so two clients removing the same
        song both succeed.
        """
        with self.store.lock:
            queue = self.session.song_queue
            for i, item in enumerate(queue):
                if item.song_id == song_id and item.timestamp == timestamp:
                    del queue[i]
                    self.logger.info("Removed %s (%s) from the queue", song_id, timestamp)
                    break
            else:
                self.logger.debug("remove_song: %s (%s) not in queue", song_id, timestamp)

            self._publish_queue_changed()
            self.store.save()
        return True

    def push_adhoc_lyrics(self, lyric: str, lyric_index: int) -> bool:
        with self.store.lock:
            self.session.current_song_adhoc_lyrics.append(
                AdhocLyricsEntry(lyric=lyric, lyric_index=lyric_index)
            )
            self._publish_adhoc_lyrics_changed()
            self.store.save()
        return True

    def set_pitch_shift_semis(self, semis: int) -> bool:
        # Pitch shift is per-performance and is not snapshotted
        with self.store.lock:
            self.session.pitch_shift_semis = semis
            self.event_bus.publish(Topic.PITCH_SHIFT_CHANGED, semis)
        return True

    def set_playback_state(self, playback_state: PlaybackState) -> bool:
        with self.store.lock:
            self.session.playback_state = PlaybackState(playback_state)
            self.event_bus.publish(
                Topic.PLAYBACK_STATE_CHANGED, self.session.playback_state.value
            )
            self.store.save()
        return True

    def send_emote(self, user_identity: UserIdentity, emote: str) -> bool:
        self.event_bus.publish(Topic.EMOTE, Emote(user_identity, emote).to_dict())
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def get_current_song(self) -> Optional[QueueItem]:
        return self.session.current_song

    def get_queue(self) -> List[QueueItem]:
        with self.store.lock:
            return list(self.session.song_queue)

    def get_playback_state(self) -> PlaybackState:
        return self.session.playback_state

    def get_pitch_shift_semis(self) -> int:
        return self.session.pitch_shift_semis

    def get_download_queue(self) -> List[DownloadQueueItem]:
        with self.store.lock:
            return list(self.session.download_queue)

    def get_adhoc_lyrics(self, song_id: str) -> Optional[List[str]]:
        with self.store.lock:
            lines = self.session.song_id_to_adhoc_lyric_lines.get(song_id)
            return list(lines) if lines is not None else None

    def get_current_song_adhoc_lyrics(self) -> List[AdhocLyricsEntry]:
        with self.store.lock:
            return list(self.session.current_song_adhoc_lyrics)

    def get_download_progress(
        self, download_type: DownloadType, song_id: str, suffix: Optional[str] = None
    ) -> Optional[float]:
        """
        Progress of an in-flight acquisition.

        Returns:
            Fraction between 0 and 1, or None if no such download is in flight
        """
        key = (DownloadType(download_type), song_id, suffix)
        with self.store.lock:
            for item in self.session.download_queue:
                if item.key() == key:
                    return item.progress
        return None

    def get_song_history(self, first: Optional[int] = None, after: Optional[int] = None) -> Connection:
        """
        Page through the song history, most recent first.

        Args:
            first: Page size; None or 0 returns everything after the cursor
            after: Offset to start from (the end_cursor of the previous page)
        """
        start = max(after or 0, 0)
        with self.store.lock:
            history = list(self.session.song_history)

        end = start + first if first else len(history)
        page = history[start:end]

        edges = [Edge(node=entry, cursor=str(start + i + 1)) for i, entry in enumerate(page)]
        return Connection(
            edges=edges,
            page_info=PageInfo(
                has_previous_page=False,
                has_next_page=end < len(history),
                start_cursor=str(start),
                end_cursor=str(start + len(page)),
            ),
        )
