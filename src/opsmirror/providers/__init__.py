"""Chat and contact source adapters.

Adapters are transport-only: they fetch and send over HTTP and return the
engine's record shapes, leaving reconciliation to ``opsmirror.sync``.
"""

from opsmirror.providers.base import ChatSource, ContactSource, fetch_all_contacts
from opsmirror.providers.beeper import BeeperChatSource
from opsmirror.providers.dex import DexContactSource

__all__ = [
    "BeeperChatSource",
    "ChatSource",
    "ContactSource",
    "DexContactSource",
    "fetch_all_contacts",
]
