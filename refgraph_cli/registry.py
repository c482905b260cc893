"""Run-scoped bookkeeping: transition registry, reentry avoider and action log."""

from __future__ import annotations

import logging
from typing import Dict, Generic, Hashable, Iterator, List, Optional, Set, TypeVar

from .models import ModuleVersion, Version

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)


class TransitionRegistry(Generic[K]):
    """Version established per key during the current run.

    Keys are module versions for promotion jobs and node paths for the switch job.
    Write-once: the first version recorded for a key wins.
    """

    def __init__(self) -> None:
        self._versions: Dict[K, Version] = {}

    def get(self, key: K) -> Optional[Version]:
        return self._versions.get(key)

    def record(self, key: K, version: Version) -> Version:
        """Record *version* for *key* and return the version in effect."""
        existing = self._versions.get(key)
        if existing is not None:
            if existing != version:
                logger.warning(
                    "Ignoring %s for %s: %s already established in this run", version, key, existing
                )
            return existing
        self._versions[key] = version
        return version

    def __contains__(self, key: object) -> bool:
        return key in self._versions

    def __len__(self) -> int:
        return len(self._versions)

    def items(self):
        return self._versions.items()


class ReentryAvoider:
    """Set of module versions already processed in this run."""

    def __init__(self) -> None:
        self._processed: Set[ModuleVersion] = set()

    def process(self, module_version: ModuleVersion) -> bool:
        """Mark *module_version* processed. Return False if it already was."""
        if module_version in self._processed:
            return False
        self._processed.add(module_version)
        return True

    def is_processed(self, module_version: ModuleVersion) -> bool:
        return module_version in self._processed


class ActionLog:
    """Append-only record of the state-changing operations performed in a run."""

    def __init__(self) -> None:
        self._actions: List[str] = []

    def add(self, action: str) -> None:
        logger.info("Action performed: %s", action)
        self._actions.append(action)

    @property
    def actions(self) -> List[str]:
        return list(self._actions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._actions))

    def __len__(self) -> int:
        return len(self._actions)

    def __bool__(self) -> bool:
        return bool(self._actions)
