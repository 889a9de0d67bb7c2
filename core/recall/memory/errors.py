"""Exceptions raised by the episodic memory subsystem.

Storage and embedding errors are not wrapped: they propagate to the caller
unchanged. These types cover failures that originate in this package.
"""


class EpisodicMemoryError(Exception):
    """Base class for episodic memory errors."""


class EpisodeBuildError(EpisodicMemoryError):
    """Raised when an EpisodeBuilder cannot produce an Episode."""


class EpisodeStoreError(EpisodicMemoryError):
    """Raised when a store operation is not possible in the current state."""


class RecordingSessionError(EpisodicMemoryError):
    """Raised when a recording session is unknown or no longer active."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Recording session {session_id} not found or inactive")
        self.session_id = session_id
