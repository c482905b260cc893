"""Execution context threaded through jobs: collaborators, properties, cancellation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum

from .modules import Model
from .plugins import UserInteraction, WorkspaceAllocator
from .properties import RuntimeProperties

logger = logging.getLogger(__name__)


class ExitStatus(IntEnum):
    SUCCESS = 0
    WARNING = 1
    ERROR = 2


class CancellationToken:
    """Cooperative cancellation set when the operator declines to continue.

    Every recursive visit checks it after returning from a child and unwinds without
    further mutation. Work already committed stays committed.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self.reason = ""

    def cancel(self, reason: str = "") -> None:
        if not self._cancelled:
            logger.info("Run cancelled%s", f": {reason}" if reason else "")
            self._cancelled = True
            self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __bool__(self) -> bool:
        return self._cancelled


@dataclass
class ExecContext:
    model: Model
    workspace: WorkspaceAllocator
    ui: UserInteraction
    properties: RuntimeProperties = field(default_factory=RuntimeProperties)
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    exit_status: ExitStatus = ExitStatus.SUCCESS

    def raise_exit_status(self, status: ExitStatus) -> None:
        if status > self.exit_status:
            self.exit_status = status
