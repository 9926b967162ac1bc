"""Domain exceptions shared by the chat stores, orchestrator and edges.

These are raised by the core and translated at the outermost boundary:
the HTTP surface turns them into the encrypted error envelope, the
WebSocket surface turns them into an ``error`` event.
"""


class ChatError(Exception):
    """Base class for every error the chat core raises on purpose."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class NotFoundError(ChatError):
    """A chat, message or user does not exist. Maps to 404."""

    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class UnauthorizedError(ChatError):
    """Caller is not a participant or no principal is bound. Maps to 401."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class BadRequestError(ChatError):
    """Malformed or rule-violating input. Maps to 400."""

    status_code = 400

    def __init__(self, message: str = "Bad request"):
        super().__init__(message)


class DuplicateNameError(BadRequestError):
    """A group with the same name (case-insensitive) already exists."""

    def __init__(self, name: str):
        super().__init__(f"A group named '{name}' already exists")
        self.name = name


class DecryptionError(ChatError):
    """Envelope could not be decrypted or parsed.

    The message is fixed so no fragment of the payload ever leaks.
    """

    status_code = 400

    def __init__(self):
        super().__init__("Invalid encrypted payload")


class StoreTimeoutError(ChatError):
    """A store operation exceeded the caller's timeout. Safe to retry."""

    status_code = 503
    retryable = True

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"Store operation '{operation}' timed out after {timeout:g}s")
        self.operation = operation
        self.timeout = timeout
