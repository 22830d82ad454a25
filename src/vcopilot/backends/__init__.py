from vcopilot.backends.base import BackendMode, ChatBackend, consume_stream, create_backend

__all__ = [
    "BackendMode",
    "ChatBackend",
    "consume_stream",
    "create_backend",
]
