"""
Data models for karafriends.

Defines typed dataclasses for all entities used throughout the application.
Queue items form a closed set of variants, one per song source; every
variant is registered in QUEUE_ITEM_TYPES, which drives decoding.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union


class PlaybackState(str, Enum):
    """Playback state shared between the player and remote controllers."""

    PAUSED = "PAUSED"
    PLAYING = "PLAYING"
    RESTARTING = "RESTARTING"
    SKIPPING = "SKIPPING"
    WAITING = "WAITING"


class DownloadType(IntEnum):
    """Kind of in-flight acquisition, used as part of the progress lookup key."""

    DAM = 0
    JOYSOUND = 1
    YOUTUBE = 2
    NICO = 3


@dataclass(frozen=True)
class UserIdentity:
    """Identifies a requester. device_id is the quota key."""

    device_id: str
    nickname: str

    def to_dict(self) -> Dict[str, Any]:
        return {"device_id": self.device_id, "nickname": self.nickname}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserIdentity":
        return cls(device_id=data["device_id"], nickname=data["nickname"])


@dataclass
class QueueItem:
    """Fields shared by every queue item variant."""

    source_type: ClassVar[str] = ""

    song_id: str
    name: str
    artist_name: str
    timestamp: str
    user_identity: UserIdentity
    playtime: Optional[int] = None

    def identity(self) -> Tuple[str, str, str]:
        """(variant, song_id, timestamp) - used for history de-duplication."""
        return (self.source_type, self.song_id, self.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source_type"] = self.source_type
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "QueueItem":
        """Decode any queue item variant from its tagged dict form."""
        fields = dict(data)
        source_type = fields.pop("source_type", None)
        item_cls = QUEUE_ITEM_TYPES.get(source_type)
        if item_cls is None:
            raise ValueError(f"Unknown queue item source type: {source_type!r}")
        fields["user_identity"] = UserIdentity.from_dict(fields["user_identity"])
        return item_cls(**fields)


@dataclass
class DamQueueItem(QueueItem):
    """Karaoke-machine catalog song, streamed live at play time."""

    source_type: ClassVar[str] = "dam"

    streaming_url_idx: str = "0"


@dataclass
class JoysoundQueueItem(QueueItem):
    """Lyrics-subscription catalog song."""

    source_type: ClassVar[str] = "joysound"

    is_romaji: bool = False
    youtube_video_id: Optional[str] = None


@dataclass
class YoutubeQueueItem(QueueItem):
    """YouTube video, optionally with captions or user-supplied lyrics."""

    source_type: ClassVar[str] = "youtube"

    has_adhoc_lyrics: bool = False
    has_captions: bool = False
    gain_value: float = 1.0


@dataclass
class NicoQueueItem(QueueItem):
    """niconico video."""

    source_type: ClassVar[str] = "nico"


QUEUE_ITEM_TYPES: Dict[Optional[str], Type[QueueItem]] = {
    DamQueueItem.source_type: DamQueueItem,
    JoysoundQueueItem.source_type: JoysoundQueueItem,
    YoutubeQueueItem.source_type: YoutubeQueueItem,
    NicoQueueItem.source_type: NicoQueueItem,
}


@dataclass
class DownloadQueueItem:
    """One in-flight acquisition. progress is a fraction between 0 and 1."""

    download_type: DownloadType
    user_identity: UserIdentity
    song_id: str
    suffix: Optional[str] = None
    progress: float = 0.0

    def key(self) -> Tuple[DownloadType, str, Optional[str]]:
        return (self.download_type, self.song_id, self.suffix)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "download_type": int(self.download_type),
            "user_identity": self.user_identity.to_dict(),
            "song_id": self.song_id,
            "suffix": self.suffix,
            "progress": self.progress,
        }


@dataclass
class AdhocLyricsEntry:
    """One line of user-supplied lyrics for the current song."""

    lyric: str
    lyric_index: int

    def to_dict(self) -> Dict[str, Any]:
        return {"lyric": self.lyric, "lyric_index": self.lyric_index}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdhocLyricsEntry":
        return cls(lyric=data["lyric"], lyric_index=data["lyric_index"])


@dataclass
class SongHistoryItem:
    """A song that has been played."""

    song: QueueItem

    def to_dict(self) -> Dict[str, Any]:
        return {"song": self.song.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SongHistoryItem":
        return cls(song=QueueItem.from_dict(data["song"]))


@dataclass
class QueueSongInfo:
    """Successful queue request. eta is advisory, in seconds."""

    eta: int

    ok: ClassVar[bool] = True

    def to_dict(self) -> Dict[str, Any]:
        return {"eta": self.eta}


@dataclass
class QueueSongError:
    """Rejected queue request."""

    reason: str

    ok: ClassVar[bool] = False

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason}


QueueSongResult = Union[QueueSongInfo, QueueSongError]


@dataclass
class Emote:
    user_identity: UserIdentity
    emote: str

    def to_dict(self) -> Dict[str, Any]:
        return {"user_identity": self.user_identity.to_dict(), "emote": self.emote}


@dataclass
class StreamingUrl:
    """A DAM streaming URL candidate."""

    high_bitrate_url: str
    low_bitrate_url: str

    def select(self, use_low_bitrate: bool) -> str:
        return self.low_bitrate_url if use_low_bitrate else self.high_bitrate_url


@dataclass
class ConfigEntry:
    """Configuration entry."""

    key: str
    value: str
    updated_at: Optional[str] = None


@dataclass
class PageInfo:
    has_previous_page: bool
    has_next_page: bool
    start_cursor: str
    end_cursor: str


@dataclass
class Edge:
    node: SongHistoryItem
    cursor: str


@dataclass
class Connection:
    """Forward-only page of song history."""

    edges: List[Edge] = field(default_factory=list)
    page_info: PageInfo = field(
        default_factory=lambda: PageInfo(False, False, "0", "0")
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edges": [
                {"node": edge.node.to_dict(), "cursor": edge.cursor} for edge in self.edges
            ],
            "page_info": asdict(self.page_info),
        }
