"""
registry.py
------------
Identity registry: connection id -> display name.

The registry is the source of truth for presence. Every mutation runs under
an asyncio lock together with its optional `announce` callback, so a
presence broadcast always reflects a consistent name list.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

PresenceAnnounce = Callable[[List[str]], Awaitable[None]]
LeaveAnnounce = Callable[[str, List[str]], Awaitable[None]]


class IdentityRegistry:
    """In-memory name map; iteration order is join order."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._names: Dict[str, str] = {}

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._names

    def __len__(self) -> int:
        return len(self._names)

    def names(self) -> List[str]:
        return list(self._names.values())

    def resolve(self, connection_id: str) -> Optional[str]:
        """Return the display name for connection_id, or None if never named."""
        return self._names.get(connection_id)

    async def set_name(self, connection_id: str, name: str,
                       announce: Optional[PresenceAnnounce] = None) -> List[str]:
        """
        Insert or overwrite the name for connection_id.

        Names are not validated: empty and duplicate names are accepted.
        A renamed connection keeps its original position in the list.
        """
        async with self._lock:
            self._names[connection_id] = name
            names = list(self._names.values())
            if announce is not None:
                await announce(names)
            return names

    async def remove(self, connection_id: str,
                     announce: Optional[LeaveAnnounce] = None) -> Optional[str]:
        """Drop connection_id; `announce(name, names)` runs only if it was named."""
        async with self._lock:
            name = self._names.pop(connection_id, None)
            if name is not None and announce is not None:
                await announce(name, list(self._names.values()))
            return name
