"""
FastAPI web server for karafriends.

Provides the REST API used by remote controllers and the player, and one
WebSocket per event topic for live updates.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from pydantic import BaseModel

from ..catalog import CatalogResolver, DamCatalog, JoysoundCatalog
from ..config_manager import ConfigManager
from ..events import AsyncSubscription, EventBus, Topic
from ..exceptions import CatalogUnavailableError
from ..models import DownloadType, PlaybackState, UserIdentity
from ..niconico import NicoSource
from ..queue import QueueManager
from ..youtube import YouTubeSource

logger = logging.getLogger(__name__)

# Request models
class UserIdentityModel(BaseModel):
    device_id: str
    nickname: str

    def to_identity(self) -> UserIdentity:
        return UserIdentity(device_id=self.device_id, nickname=self.nickname)


class QueueSongRequest(BaseModel):
    """Fields common to every queue request."""

    user_identity: UserIdentityModel
    song_id: str
    name: str
    artist_name: str
    playtime: Optional[int] = None
    try_head_of_queue: bool = False


class QueueDamSongRequest(QueueSongRequest):
    streaming_url_idx: str = "0"


class QueueJoysoundSongRequest(QueueSongRequest):
    is_romaji: bool = False
    youtube_video_id: Optional[str] = None


class QueueYoutubeSongRequest(QueueSongRequest):
    adhoc_song_lyrics: str = ""
    caption_code: Optional[str] = None
    gain_value: float = 1.0


class QueueNicoSongRequest(QueueSongRequest):
    pass


class AdhocLyricsRequest(BaseModel):
    lyric: str
    lyric_index: int


class PitchShiftRequest(BaseModel):
    semis: int


class PlaybackStateRequest(BaseModel):
    playback_state: PlaybackState


class EmoteRequest(BaseModel):
    user_identity: UserIdentityModel
    emote: str


# Dependency to get components
def get_queue_manager(request: Request) -> QueueManager:
    """Get QueueManager from app state."""
    return request.app.state.queue_manager


def get_config_manager(request: Request) -> ConfigManager:
    """Get ConfigManager from app state."""
    return request.app.state.config_manager


def get_youtube_source(request: Request) -> YouTubeSource:
    return request.app.state.youtube_source


def get_nico_source(request: Request) -> NicoSource:
    return request.app.state.nico_source


def get_dam_catalog(request: Request) -> DamCatalog:
    """Get the DAM catalog, or fail with 503 if none is configured."""
    catalogs: CatalogResolver = request.app.state.catalogs
    try:
        return catalogs.require_dam()
    except CatalogUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))


def get_joysound_catalog(request: Request) -> JoysoundCatalog:
    """Get the Joysound catalog, or fail with 503 if none is configured."""
    catalogs: CatalogResolver = request.app.state.catalogs
    try:
        return catalogs.require_joysound()
    except CatalogUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))


def create_app(
    queue_manager: QueueManager,
    event_bus: EventBus,
    config_manager: ConfigManager,
    youtube_source: YouTubeSource,
    nico_source: NicoSource,
    catalogs: Optional[CatalogResolver] = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        queue_manager: QueueManager instance
        event_bus: EventBus that WebSocket subscribers listen on
        config_manager: ConfigManager instance
        youtube_source: YouTubeSource for search and video info
        nico_source: NicoSource for video info
        catalogs: CatalogResolver with whichever DAM/Joysound clients exist

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(title="karafriends", version="1.0.0")

    # Store components in app state
    app.state.queue_manager = queue_manager
    app.state.event_bus = event_bus
    app.state.config_manager = config_manager
    app.state.youtube_source = youtube_source
    app.state.nico_source = nico_source
    app.state.catalogs = catalogs or CatalogResolver()

    # Session queries
    @app.get("/api/current-song")
    async def get_current_song(queue_mgr: QueueManager = Depends(get_queue_manager)):
        """Current song plus the adhoc lyrics pushed for it so far."""
        song = queue_mgr.get_current_song()
        return {
            "current_song": song.to_dict() if song else None,
            "adhoc_lyrics": [entry.to_dict() for entry in queue_mgr.get_current_song_adhoc_lyrics()],
        }

    @app.get("/api/queue")
    async def get_queue(queue_mgr: QueueManager = Depends(get_queue_manager)):
        return {"queue": [item.to_dict() for item in queue_mgr.get_queue()]}

    @app.get("/api/playback-state")
    async def get_playback_state(queue_mgr: QueueManager = Depends(get_queue_manager)):
        return {"playback_state": queue_mgr.get_playback_state().value}

    @app.get("/api/pitch-shift")
    async def get_pitch_shift(queue_mgr: QueueManager = Depends(get_queue_manager)):
        return {"pitch_shift_semis": queue_mgr.get_pitch_shift_semis()}

    @app.get("/api/history")
    async def get_history(
        first: Optional[int] = Query(None, ge=0),
        after: Optional[int] = Query(None, ge=0),
        queue_mgr: QueueManager = Depends(get_queue_manager),
    ):
        """Played songs, most recent first. Pass the previous end_cursor as after."""
        return queue_mgr.get_song_history(first, after).to_dict()

    @app.get("/api/adhoc-lyrics/{song_id}")
    async def get_adhoc_lyrics(
        song_id: str, queue_mgr: QueueManager = Depends(get_queue_manager)
    ):
        return {"song_id": song_id, "lyrics": queue_mgr.get_adhoc_lyrics(song_id)}

    @app.get("/api/downloads")
    async def get_downloads(queue_mgr: QueueManager = Depends(get_queue_manager)):
        return {"downloads": [item.to_dict() for item in queue_mgr.get_download_queue()]}

    @app.get("/api/downloads/progress")
    async def get_download_progress(
        download_type: int,
        song_id: str,
        suffix: Optional[str] = None,
        queue_mgr: QueueManager = Depends(get_queue_manager),
    ):
        """Progress of one in-flight download; progress is null if it is not in flight."""
        try:
            kind = DownloadType(download_type)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown download type: {download_type}")
        return {"progress": queue_mgr.get_download_progress(kind, song_id, suffix)}

    @app.get("/api/config")
    async def get_config(config: ConfigManager = Depends(get_config_manager)):
        """
        Get all configuration with schema metadata.

        Returns:
            - values: Current configuration values
            - schema: Metadata for each editable key
            - groups: Group definitions for organizing the config UI
        """
        return config.get_full_config()

    # Catalog endpoints. yt-dlp and the catalog clients block, so these
    # run in the threadpool.
    @app.get("/api/youtube/search")
    def search_youtube(
        q: str,
        max_results: int = Query(10, ge=1, le=50),
        youtube: YouTubeSource = Depends(get_youtube_source),
    ):
        if not youtube.is_search_configured():
            raise HTTPException(status_code=503, detail="YouTube API key not configured")
        return {"results": youtube.search(q, max_results=max_results)}

    @app.get("/api/youtube/videos/{video_id}")
    def get_youtube_video(video_id: str, youtube: YouTubeSource = Depends(get_youtube_source)):
        info = youtube.get_video_info(video_id)
        if info is None:
            raise HTTPException(status_code=404, detail="Video not found")
        return info

    @app.get("/api/nico/videos/{video_id}")
    def get_nico_video(video_id: str, nico: NicoSource = Depends(get_nico_source)):
        info = nico.get_video_info(video_id)
        if info is None:
            raise HTTPException(status_code=404, detail="Video not found")
        return info

    @app.get("/api/dam/songs")
    def search_dam_songs(
        name: str,
        first: int = Query(20, ge=1),
        after: int = Query(0, ge=0),
        dam: DamCatalog = Depends(get_dam_catalog),
    ):
        return dam.search_songs(name, first, after)

    @app.get("/api/dam/songs/{song_id}")
    def get_dam_song(song_id: str, dam: DamCatalog = Depends(get_dam_catalog)):
        song = dam.get_song(song_id)
        if song is None:
            raise HTTPException(status_code=404, detail="Song not found")
        return song

    @app.get("/api/joysound/songs")
    def search_joysound_songs(
        keyword: str,
        first: int = Query(20, ge=1),
        after: int = Query(0, ge=0),
        joysound: JoysoundCatalog = Depends(get_joysound_catalog),
    ):
        return joysound.search_songs(keyword, first, after)

    @app.get("/api/joysound/songs/{song_id}")
    def get_joysound_song(song_id: str, joysound: JoysoundCatalog = Depends(get_joysound_catalog)):
        song = joysound.get_song(song_id)
        if song is None:
            raise HTTPException(status_code=404, detail="Song not found")
        return song

    # Queue mutations. A rejected request is still a 200 with a reason.
    @app.post("/api/queue/dam", dependencies=[Depends(get_dam_catalog)])
    async def queue_dam_song(
        request_data: QueueDamSongRequest,
        queue_mgr: QueueManager = Depends(get_queue_manager),
    ):
        result = queue_mgr.queue_dam_song(
            user_identity=request_data.user_identity.to_identity(),
            song_id=request_data.song_id,
            name=request_data.name,
            artist_name=request_data.artist_name,
            streaming_url_idx=request_data.streaming_url_idx,
            playtime=request_data.playtime,
            try_head_of_queue=request_data.try_head_of_queue,
        )
        return result.to_dict()

    @app.post("/api/queue/joysound", dependencies=[Depends(get_joysound_catalog)])
    async def queue_joysound_song(
        request_data: QueueJoysoundSongRequest,
        queue_mgr: QueueManager = Depends(get_queue_manager),
    ):
        result = queue_mgr.queue_joysound_song(
            user_identity=request_data.user_identity.to_identity(),
            song_id=request_data.song_id,
            name=request_data.name,
            artist_name=request_data.artist_name,
            is_romaji=request_data.is_romaji,
            youtube_video_id=request_data.youtube_video_id,
            playtime=request_data.playtime,
            try_head_of_queue=request_data.try_head_of_queue,
        )
        return result.to_dict()

    @app.post("/api/queue/youtube")
    async def queue_youtube_song(
        request_data: QueueYoutubeSongRequest,
        queue_mgr: QueueManager = Depends(get_queue_manager),
    ):
        result = queue_mgr.queue_youtube_song(
            user_identity=request_data.user_identity.to_identity(),
            song_id=request_data.song_id,
            name=request_data.name,
            artist_name=request_data.artist_name,
            adhoc_song_lyrics=request_data.adhoc_song_lyrics,
            caption_code=request_data.caption_code,
            gain_value=request_data.gain_value,
            playtime=request_data.playtime,
            try_head_of_queue=request_data.try_head_of_queue,
        )
        return result.to_dict()

    @app.post("/api/queue/nico")
    async def queue_nico_song(
        request_data: QueueNicoSongRequest,
        queue_mgr: QueueManager = Depends(get_queue_manager),
    ):
        result = queue_mgr.queue_nico_song(
            user_identity=request_data.user_identity.to_identity(),
            song_id=request_data.song_id,
            name=request_data.name,
            artist_name=request_data.artist_name,
            playtime=request_data.playtime,
            try_head_of_queue=request_data.try_head_of_queue,
        )
        return result.to_dict()

    @app.post("/api/queue/pop")
    async def pop_song(queue_mgr: QueueManager = Depends(get_queue_manager)):
        """Advance to the next song (called by the player)."""
        song = queue_mgr.pop_song()
        return {"current_song": song.to_dict() if song else None}

    @app.delete("/api/queue/{song_id}/{timestamp}")
    async def remove_song(
        song_id: str, timestamp: str, queue_mgr: QueueManager = Depends(get_queue_manager)
    ):
        queue_mgr.remove_song(song_id, timestamp)
        return {"status": "removed"}

    # Player controls
    @app.post("/api/adhoc-lyrics")
    async def push_adhoc_lyrics(
        request_data: AdhocLyricsRequest,
        queue_mgr: QueueManager = Depends(get_queue_manager),
    ):
        queue_mgr.push_adhoc_lyrics(request_data.lyric, request_data.lyric_index)
        return {"status": "added"}

    @app.put("/api/pitch-shift")
    async def set_pitch_shift(
        request_data: PitchShiftRequest,
        queue_mgr: QueueManager = Depends(get_queue_manager),
    ):
        queue_mgr.set_pitch_shift_semis(request_data.semis)
        return {"status": "updated", "pitch_shift_semis": request_data.semis}

    @app.put("/api/playback-state")
    async def set_playback_state(
        request_data: PlaybackStateRequest,
        queue_mgr: QueueManager = Depends(get_queue_manager),
    ):
        queue_mgr.set_playback_state(request_data.playback_state)
        return {"status": "updated", "playback_state": request_data.playback_state.value}

    @app.post("/api/emotes")
    async def send_emote(
        request_data: EmoteRequest,
        queue_mgr: QueueManager = Depends(get_queue_manager),
    ):
        queue_mgr.send_emote(request_data.user_identity.to_identity(), request_data.emote)
        return {"status": "sent"}

    # Subscriptions
    @app.websocket("/ws/{topic}")
    async def subscribe(websocket: WebSocket, topic: str):
        """Stream every message published on topic as {"topic": ..., "payload": ...}."""
        try:
            topic_enum = Topic(topic)
        except ValueError:
            logger.info("Rejected subscription to unknown topic %s", topic)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        bus: EventBus = websocket.app.state.event_bus
        # Subscribe before accepting so nothing published after the client
        # sees the handshake is missed
        subscription = bus.subscribe_async(topic_enum)
        try:
            await websocket.accept()
            await _serve_subscription(websocket, subscription, topic_enum)
        finally:
            subscription.close()
            logger.debug("Subscriber on %s disconnected", topic_enum.value)

    return app


async def _serve_subscription(
    websocket: WebSocket, subscription: AsyncSubscription, topic: Topic
) -> None:
    """Forward messages until the client disconnects."""

    async def pump() -> None:
        while True:
            payload = await subscription.get()
            message: Dict[str, Any] = {"topic": topic.value, "payload": payload}
            await websocket.send_json(message)

    async def wait_for_disconnect() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    tasks = [asyncio.ensure_future(pump()), asyncio.ensure_future(wait_for_disconnect())]
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Subscription on %s ended: %s", topic.value, task.exception())
