"""
Acquisition pipeline for karafriends.

One strategy per song source turns an admitted request into a playable
queue entry. DAM songs stream live from the catalog and are queued at
once; every other source is tracked in the download queue while its media
is fetched, and is only queued once the fetch succeeds.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, ClassVar, Dict, List, Optional, Type

from .events import EventBus, Topic
from .media_library import MediaLibrary
from .models import (
    DamQueueItem,
    DownloadQueueItem,
    DownloadType,
    JoysoundQueueItem,
    NicoQueueItem,
    QueueItem,
    QueueSongResult,
    YoutubeQueueItem,
)
from .session import SessionStore

OnReady = Callable[[QueueItem, bool], QueueSongResult]


def cleanup_adhoc_song_lyrics(lyrics: str) -> List[str]:
    """Split user-supplied lyrics into lines, dropping blank ones."""
    return [line for line in lyrics.splitlines() if line.strip() != ""]


class AcquisitionStrategy(ABC):
    """Base class for per-source acquisition."""

    item_type: ClassVar[Type[QueueItem]]

    def __init__(self, store: SessionStore, event_bus: EventBus, library: MediaLibrary):
        self.store = store
        self.event_bus = event_bus
        self.library = library
        self.logger = logging.getLogger(__name__)

    @abstractmethod
    def acquire(
        self, item: QueueItem, push_to_head: bool, on_ready: OnReady, **options: Any
    ) -> Optional[QueueSongResult]:
        """
        Start making item playable.

        Returns:
            The queue result if the item was queued before returning, or
            None if it will be queued when its fetch completes
        """
        ...


class DamStrategy(AcquisitionStrategy):
    """DAM songs are playable immediately; media is prefetched in the background."""

    item_type = DamQueueItem

    def acquire(
        self, item: QueueItem, push_to_head: bool, on_ready: OnReady, **options: Any
    ) -> Optional[QueueSongResult]:
        result = on_ready(item, push_to_head)

        self.logger.info("Starting offline download of DAM song %s", item.song_id)

        def on_status(status: str, path: Optional[str], error: Optional[str]) -> None:
            if status == "error":
                self.logger.warning("Prefetch of DAM song %s failed: %s", item.song_id, error)

        self.library.request(
            "dam",
            f"{item.song_id}_{item.streaming_url_idx}",
            callback=on_status,
            options={"song_id": item.song_id, "streaming_url_idx": item.streaming_url_idx},
        )
        return result


class DownloadingStrategy(AcquisitionStrategy):
    """
    Tracks a fetch in the download queue and queues the item on success.

    The download queue entry is swapped for the queue entry under the
    session lock, so no observer ever sees both or neither while the fetch
    is succeeding.
    """

    download_type: ClassVar[DownloadType]
    source: ClassVar[str]

    def media_id(self, item: QueueItem) -> str:
        return item.song_id

    def suffix(self, item: QueueItem, options: Dict[str, Any]) -> Optional[str]:
        return None

    def fetch_options(self, item: QueueItem, options: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    def before_fetch(self, item: QueueItem, options: Dict[str, Any]) -> None:
        """Hook for work that must happen whether or not the fetch succeeds."""

    def acquire(
        self, item: QueueItem, push_to_head: bool, on_ready: OnReady, **options: Any
    ) -> Optional[QueueSongResult]:
        self.before_fetch(item, options)

        download_item = DownloadQueueItem(
            download_type=self.download_type,
            user_identity=item.user_identity,
            song_id=item.song_id,
            suffix=self.suffix(item, options),
        )
        with self.store.lock:
            self.store.session.download_queue.append(download_item)

        def on_progress(fraction: float) -> None:
            with self.store.lock:
                download_item.progress = fraction

        def on_status(status: str, path: Optional[str], error: Optional[str]) -> None:
            if status == "ready":
                self._complete(download_item, item, push_to_head, on_ready)
            elif status == "error":
                self._fail(download_item, error or "unknown error")

        self.library.request(
            self.source,
            self.media_id(item),
            callback=on_status,
            on_progress=on_progress,
            options=self.fetch_options(item, options),
        )
        return None

    def _remove_download(self, download_item: DownloadQueueItem) -> None:
        queue = self.store.session.download_queue
        for i, candidate in enumerate(queue):
            if candidate is download_item:
                del queue[i]
                return

    def _complete(
        self,
        download_item: DownloadQueueItem,
        item: QueueItem,
        push_to_head: bool,
        on_ready: OnReady,
    ) -> None:
        with self.store.lock:
            self._remove_download(download_item)
            on_ready(item, push_to_head)

    def _fail(self, download_item: DownloadQueueItem, reason: str) -> None:
        with self.store.lock:
            self._remove_download(download_item)

        self.logger.error(
            "Could not acquire %s song %s for %s: %s",
            self.source,
            download_item.song_id,
            download_item.user_identity.nickname,
            reason,
        )
        self.event_bus.publish(
            Topic.ACQUISITION_FAILED,
            {
                "download_type": int(download_item.download_type),
                "song_id": download_item.song_id,
                "suffix": download_item.suffix,
                "user_identity": download_item.user_identity.to_dict(),
                "reason": reason,
            },
        )


class JoysoundStrategy(DownloadingStrategy):
    item_type = JoysoundQueueItem
    download_type = DownloadType.JOYSOUND
    source = "joysound"


class YoutubeStrategy(DownloadingStrategy):
    """
    YouTube videos, optionally with a caption track.

    options: adhoc_song_lyrics, caption_code
    """

    item_type = YoutubeQueueItem
    download_type = DownloadType.YOUTUBE
    source = "youtube"

    def suffix(self, item: QueueItem, options: Dict[str, Any]) -> Optional[str]:
        return options.get("caption_code") or None

    def fetch_options(self, item: QueueItem, options: Dict[str, Any]) -> Dict[str, Any]:
        return {"caption_code": options.get("caption_code") or None}

    def before_fetch(self, item: QueueItem, options: Dict[str, Any]) -> None:
        lyrics = options.get("adhoc_song_lyrics")
        if lyrics:
            with self.store.lock:
                self.store.session.song_id_to_adhoc_lyric_lines[item.song_id] = (
                    cleanup_adhoc_song_lyrics(lyrics)
                )


class NicoStrategy(DownloadingStrategy):
    item_type = NicoQueueItem
    download_type = DownloadType.NICO
    source = "nico"


class AcquisitionPipeline:
    """Looks up the strategy for each queue item variant."""

    STRATEGY_TYPES: ClassVar[List[Type[AcquisitionStrategy]]] = [
        DamStrategy,
        JoysoundStrategy,
        YoutubeStrategy,
        NicoStrategy,
    ]

    def __init__(self, store: SessionStore, event_bus: EventBus, library: MediaLibrary):
        self._strategies: Dict[Type[QueueItem], AcquisitionStrategy] = {
            strategy_cls.item_type: strategy_cls(store, event_bus, library)
            for strategy_cls in self.STRATEGY_TYPES
        }

    def strategy_for(self, item: QueueItem) -> AcquisitionStrategy:
        strategy = self._strategies.get(type(item))
        if strategy is None:
            raise TypeError(f"No acquisition strategy for {type(item).__name__}")
        return strategy

    def acquire(
        self, item: QueueItem, push_to_head: bool, on_ready: OnReady, **options: Any
    ) -> Optional[QueueSongResult]:
        return self.strategy_for(item).acquire(item, push_to_head, on_ready, **options)
