class ChatError(Exception):
    """Base failure carrying a kind tag and a human-readable message."""

    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class StorageError(ChatError):
    kind = "storage"


class NotFoundError(StorageError):
    kind = "not_found"


class CompletionError(ChatError):
    kind = "completion"


class ProviderConfigError(CompletionError):
    """Stored model config or conversation options failed to parse."""

    kind = "provider_config"


class InvalidStateError(ChatError):
    kind = "invalid_state"


class ReplyCancelledError(ChatError):
    kind = "cancelled"
