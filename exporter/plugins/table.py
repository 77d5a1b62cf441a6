"""
Plugin table: identity -> current plugin unit.

The table is copy-on-write. Every mutation builds a new dict and swaps the
reference in one assignment, so snapshot() always returns either the whole
pre-update or the whole post-update view, never a partial merge.

Units displaced by replace() or remove() are queued as retired. The refresh
coordinator drains that queue at the start of each cycle and closes their
registry scopes, so a cycle already in flight keeps running the units it
started with.
"""

from typing import Dict, List, Optional, Tuple

from loguru import logger

from .provider import PluginUnit


class PluginTable:
    """Mapping of plugin identity to its most recently loaded unit."""

    def __init__(self):
        self._units: Dict[str, PluginUnit] = {}
        self._retired: List[PluginUnit] = []

    def replace(self, unit: PluginUnit) -> Optional[PluginUnit]:
        """
        Insert or replace the unit stored under unit.identity.

        Args:
            unit: Newly loaded unit

        Returns:
            The displaced unit, or None if the identity was new
        """
        log = logger.bind(context="PluginTable.replace")
        previous = self._units.get(unit.identity)
        units = dict(self._units)
        units[unit.identity] = unit
        self._units = units
        if previous is not None and previous is not unit:
            self._retired.append(previous)
            log.debug(
                f"Replaced {unit.name} generation {previous.generation} -> {unit.generation}"
            )
        return previous

    def remove(self, identity: str) -> Optional[PluginUnit]:
        """
        Remove the unit stored under identity and retire it.

        Returns:
            The removed unit, or None if the identity was unknown
        """
        previous = self._units.get(identity)
        if previous is None:
            return None
        units = dict(self._units)
        del units[identity]
        self._units = units
        self._retired.append(previous)
        return previous

    def get(self, identity: str) -> Optional[PluginUnit]:
        return self._units.get(identity)

    def __contains__(self, identity: str) -> bool:
        return identity in self._units

    def __len__(self) -> int:
        return len(self._units)

    def identities(self) -> List[str]:
        return list(self._units.keys())

    def snapshot(self) -> Tuple[PluginUnit, ...]:
        """Immutable view of the units present right now."""
        return tuple(self._units.values())

    def drain_retired(self) -> List[PluginUnit]:
        """Return and forget every unit displaced since the last drain."""
        retired, self._retired = self._retired, []
        return retired
