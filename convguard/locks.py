"""
Per-conversation locks.

Each conversation gets one re-entrant thread lock for synchronous managers
and one asyncio lock for coroutine flows. Different conversations never share
a lock. Locks are held weakly and disappear once no caller references them.
"""

from __future__ import annotations

import asyncio
import threading
import weakref


class ConversationLocks:
    """Registry handing out one lock pair per conversation id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._sync: weakref.WeakValueDictionary[str, threading.RLock] = (
            weakref.WeakValueDictionary()
        )
        self._async: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def sync_lock(self, conversation_id: str) -> threading.RLock:
        """Re-entrant thread lock for a conversation."""
        with self._guard:
            lock = self._sync.get(conversation_id)
            if lock is None:
                lock = self._sync[conversation_id] = threading.RLock()
            return lock

    def async_lock(self, conversation_id: str) -> asyncio.Lock:
        """Asyncio lock for a conversation."""
        with self._guard:
            lock = self._async.get(conversation_id)
            if lock is None:
                lock = self._async[conversation_id] = asyncio.Lock()
            return lock

    def __len__(self) -> int:
        with self._guard:
            return len(set(self._sync) | set(self._async))


__all__ = ["ConversationLocks"]
