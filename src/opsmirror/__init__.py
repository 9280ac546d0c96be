"""Mirror remote chats, messages and contacts into a local store."""

__version__ = "0.1.0"
