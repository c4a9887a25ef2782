"""
Exception hierarchy for the Fansly live recorder.
"""


class RecorderError(Exception):
    """Base class for all recorder errors."""


class ApiError(RecorderError):
    """A platform API request failed or returned an unusable payload."""


class LockHeldError(RecorderError):
    """A recording lock for the creator already exists."""

    def __init__(self, creator_id: str):
        super().__init__(f"recording lock already held for {creator_id}")
        self.creator_id = creator_id


class WatchListError(RecorderError):
    """The watch-list could not be read or persisted."""


class ProcessError(RecorderError):
    """An external media process failed to start or exited non-zero."""


class ChatError(RecorderError):
    """Base class for chat capture errors."""


class ChatConnectionError(ChatError):
    """Connecting, authenticating, joining, pinging or reading failed."""


class ChatSessionCrashed(ChatError):
    """An unexpected exception escaped the chat streaming loop."""


class ChatStorageError(ChatError):
    """Chat messages could not be merged into the output file."""


class ChatAlreadyRecordingError(ChatError):
    """A chat capture session already exists for the creator."""
