"""
Serving cache for rendered exposition text.

Holds exactly one immutable Snapshot. publish() builds the next snapshot in
full and then swaps the reference, so a reader gets either the previous or
the next snapshot as a whole. Nothing here blocks or awaits.
"""

import time
from dataclasses import dataclass
from typing import Optional

from loguru import logger


@dataclass(frozen=True)
class Snapshot:
    """
    Last published render.

    Attributes:
        text: Exposition text (bytes, as produced by prometheus_client)
        last_updated: Epoch seconds of the publish, None before the first one
    """
    text: bytes = b""
    last_updated: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return self.last_updated is None

    @property
    def last_updated_ms(self) -> Optional[int]:
        if self.last_updated is None:
            return None
        return int(self.last_updated * 1000)


class ServingCache:
    """Single-slot cache read by the HTTP layer, written by the refresher."""

    def __init__(self):
        self._snapshot = Snapshot()
        self.publish_count = 0

    def read(self) -> Snapshot:
        """Return the last published snapshot."""
        return self._snapshot

    def publish(self, text: bytes, timestamp: Optional[float] = None) -> Snapshot:
        """
        Replace the cached snapshot.

        Args:
            text: Complete exposition text of one refresh cycle
            timestamp: Publish time, defaults to now

        Returns:
            The snapshot now being served
        """
        if isinstance(text, str):
            text = text.encode("utf-8")
        snapshot = Snapshot(
            text=bytes(text),
            last_updated=time.time() if timestamp is None else timestamp,
        )
        self._snapshot = snapshot
        self.publish_count += 1
        logger.bind(context="ServingCache.publish").debug(
            f"Published metrics snapshot #{self.publish_count} ({len(snapshot.text)} bytes)"
        )
        return snapshot
