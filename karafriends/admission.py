"""
Admission control for karafriends.

Per-user quota and privileged insertion policy, evaluated before a request
touches the queue.
"""

import logging

from .config_manager import ConfigManager
from .models import UserIdentity
from .session import SessionStore


class AdmissionControl:
    """Decides whether a user may queue another song, and where."""

    def __init__(self, config_manager: ConfigManager, store: SessionStore):
        self.config_manager = config_manager
        self.store = store
        self.logger = logging.getLogger(__name__)

    def is_privileged(self, user_identity: UserIdentity) -> bool:
        """Admins are matched by nickname or device id; either is enough."""
        return (
            user_identity.nickname in self.config_manager.admin_nicks
            or user_identity.device_id in self.config_manager.admin_device_ids
        )

    def has_max_songs_in_queue(self, user_identity: UserIdentity) -> bool:
        """
        Check whether a user has used up their queue allowance.

        Songs waiting in the queue and songs still downloading both count.
        A limit of zero or less means unlimited, and admins are never limited.
        """
        limit = self.config_manager.pax_song_queue_limit

        with self.store.lock:
            session = self.store.session
            queued = sum(
                1
                for item in session.song_queue
                if item.user_identity.device_id == user_identity.device_id
            )
            downloading = sum(
                1
                for item in session.download_queue
                if item.user_identity.device_id == user_identity.device_id
            )

        self.logger.debug(
            "User %s has %d queued, %d downloading (limit %d)",
            user_identity.nickname,
            queued,
            downloading,
            limit,
        )

        return (
            not self.is_privileged(user_identity)
            and limit > 0
            and queued + downloading >= limit
        )

    def can_push_to_head_of_queue(self, user_identity: UserIdentity) -> bool:
        return self.is_privileged(user_identity)

    def rejection_reason(self, user_identity: UserIdentity) -> str:
        return (
            f"{user_identity.nickname} already has "
            f"{self.config_manager.pax_song_queue_limit} song(s) in the queue or downloading"
        )
