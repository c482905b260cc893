"""Semantic version policy for git-tagged modules."""

from __future__ import annotations

import logging
import re
from typing import Optional, Tuple

from .errors import UserError
from .models import Version, VersionType
from .plugins import Scm, UserInteraction, VersionPolicy

logger = logging.getLogger(__name__)

SEMVER_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
INCREMENTS = ("major", "minor", "patch")


def bump(version: Tuple[int, int, int], increment: str) -> Tuple[int, int, int]:
    major, minor, patch = version
    if increment == "major":
        return major + 1, 0, 0
    if increment == "minor":
        return major, minor + 1, 0
    return major, minor, patch + 1


class SemanticVersionPolicy(VersionPolicy):
    """Static versions ``S/x.y.z`` bumped from the highest existing one.

    Dynamic versions come from ``dynamic_version`` when configured, otherwise the operator
    is asked, the current version being the base of a new one.
    """

    def __init__(
        self,
        scm: Scm,
        ui: UserInteraction,
        increment: str = "minor",
        dynamic_version: Optional[Version] = None,
    ):
        if increment not in INCREMENTS:
            raise ValueError(f"Invalid version increment {increment!r}, expected one of {INCREMENTS}")
        self.scm = scm
        self.ui = ui
        self.increment = increment
        self.dynamic_version = dynamic_version

    def next_static_version(self, current: Version) -> Version:
        existing = []
        for version in self.scm.list_versions(VersionType.STATIC):
            match = SEMVER_RE.match(version.name)
            if match:
                existing.append(tuple(int(part) for part in match.groups()))
        if not existing:
            return Version.static("1.0.0")
        major, minor, patch = bump(max(existing), self.increment)
        return Version.static(f"{major}.{minor}.{patch}")

    def select_static_version(self, current: Version) -> Optional[Version]:
        commits = self.scm.list_commits(current, limit=1)
        if commits and commits[0].static_versions:
            existing = commits[0].static_versions[0]
            logger.info("%s already released as %s", current, existing)
            return existing
        proposed = self.next_static_version(current)
        if not self.ui.confirm(f"Release {current} as {proposed}?"):
            return None
        return proposed

    def next_dynamic_version(self, current: Version) -> Optional[Tuple[Version, Version]]:
        if self.dynamic_version is not None:
            return self.dynamic_version, current
        default = str(current) if current.is_dynamic else ""
        answer = self.ui.ask(f"Dynamic version to switch {current} to?", default or None).strip()
        if not answer:
            return None
        try:
            selected = Version.parse(answer)
        except ValueError as exc:
            raise UserError(str(exc)) from None
        if not selected.is_dynamic:
            raise UserError(f"{selected} is not a dynamic version")
        return selected, current
