"""
Main entry point for karafriends.

Initializes all components and starts the server.
"""

import argparse
import logging
from typing import Optional

import uvicorn

from .acquisition import AcquisitionPipeline
from .admission import AdmissionControl
from .catalog import CatalogResolver, DamStreamFetcher, JoysoundDataFetcher
from .config_manager import ConfigManager
from .database import Database
from .events import EventBus
from .media_library import MediaLibrary
from .niconico import NicoSource
from .queue import QueueManager
from .session import SNAPSHOT_FILENAME, SessionStore
from .web.server import create_app
from .youtube import YouTubeSource

logger = logging.getLogger(__name__)


class KarafriendsServer:
    """Main server class that orchestrates all components."""

    def __init__(self, db_path: Optional[str] = None, catalogs: Optional[CatalogResolver] = None):
        """
        Initialize all components.

        Args:
            db_path: Path to the configuration database (default ~/.karafriends)
            catalogs: DAM/Joysound clients, if any are available
        """
        logger.info("Initializing karafriends server...")

        self.database = Database(db_path)
        self.config_manager = ConfigManager(self.database)
        self.catalogs = catalogs or CatalogResolver()

        # Session state, restored from the last snapshot
        self.store = SessionStore(self.config_manager.data_directory / SNAPSHOT_FILENAME)
        self.event_bus = EventBus()
        self.admission = AdmissionControl(self.config_manager, self.store)

        # Media fetchers
        self.youtube_source = YouTubeSource(self.config_manager)
        self.nico_source = NicoSource()
        self.media_library = MediaLibrary(self.config_manager)
        self.media_library.register_fetcher(self.youtube_source)
        self.media_library.register_fetcher(self.nico_source)
        self.media_library.register_fetcher(DamStreamFetcher(self.catalogs, self.config_manager))
        self.media_library.register_fetcher(JoysoundDataFetcher(self.catalogs))

        if not self.youtube_source.is_search_configured():
            logger.warning(
                "YouTube API key not configured. YouTube search will be unavailable."
            )
        if self.catalogs.dam is None:
            logger.warning("No DAM catalog configured, DAM songs cannot be queued")
        if self.catalogs.joysound is None:
            logger.warning("No Joysound catalog configured, Joysound songs cannot be queued")

        self.pipeline = AcquisitionPipeline(self.store, self.event_bus, self.media_library)
        self.queue_manager = QueueManager(
            self.store, self.event_bus, self.admission, self.pipeline
        )

        # Web server
        self.web_app = create_app(
            self.queue_manager,
            self.event_bus,
            self.config_manager,
            self.youtube_source,
            self.nico_source,
            catalogs=self.catalogs,
        )

        # Uvicorn server instance (will be created in run())
        self.uvicorn_server = None

        logger.info("karafriends server initialized")

    def run(self, host: str = "0.0.0.0", port: Optional[int] = None):
        """Start the server (blocking)."""
        port = port or self.config_manager.get_int("remocon_port", 8080)

        logger.info("=" * 60)
        logger.info("karafriends is running!")
        logger.info("API: http://%s:%d/api", host, port)
        logger.info("Data directory: %s", self.config_manager.data_directory)
        logger.info("=" * 60)

        config = uvicorn.Config(self.web_app, host=host, port=port, log_level="info")
        self.uvicorn_server = uvicorn.Server(config)
        self.uvicorn_server.run()

    def stop(self):
        """Stop all components."""
        logger.info("Stopping karafriends server...")

        if self.uvicorn_server:
            self.uvicorn_server.should_exit = True

        # Final snapshot so the queue survives the restart
        self.store.save()

        if self.database:
            self.database.close()

        logger.info("karafriends server stopped")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="karafriends - karaoke session server")
    parser.add_argument("--host", default="0.0.0.0", help="Address to listen on")
    parser.add_argument("--port", type=int, default=None, help="Port (default: remocon_port)")
    parser.add_argument("--db", default=None, help="Path to the configuration database")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    server = KarafriendsServer(db_path=args.db)
    try:
        server.run(host=args.host, port=args.port)
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()


if __name__ == "__main__":
    main()
