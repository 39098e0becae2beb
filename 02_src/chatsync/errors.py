"""Domain errors raised by the chat sync core."""


class ChatSyncError(Exception):
    """Base class for chat sync errors."""


class OrganizationResolutionError(ChatSyncError):
    """No organization could be attributed to an upload."""

    def __init__(self, conversation_id: str | None = None):
        self.conversation_id = conversation_id
        super().__init__(
            "Não foi possível identificar a organização desta conversa"
        )


class QuotaExceededError(ChatSyncError):
    """The backend refused an upload because of the hourly quota."""

    def __init__(self, limit: int, used: int):
        self.limit = limit
        self.used = used
        super().__init__(
            f"Limite de {limit} uploads por hora excedido ({used}/{limit})"
        )


class ObjectStorageError(ChatSyncError):
    """An object storage operation failed."""
