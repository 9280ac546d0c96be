"""Test support utilities for the opsmirror package.

In-memory stores and scripted sources that satisfy the sync engine's
contracts. Nothing here depends on pytest, so the helpers can be imported from
any test tree.
"""

from __future__ import annotations

from opsmirror.testing.memory import (
    FakeChatSource,
    FakeContactSource,
    InMemoryChatStore,
    InMemoryContactStore,
    InMemoryStateStore,
    ManualClock,
)

__all__ = [
    "FakeChatSource",
    "FakeContactSource",
    "InMemoryChatStore",
    "InMemoryContactStore",
    "InMemoryStateStore",
    "ManualClock",
]
