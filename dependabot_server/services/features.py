"""Feature targeting for per-job switches such as updater debug output."""

from __future__ import annotations

from typing import Iterable


def targeting_groups(project_id: str, ecosystem: str) -> list[str]:
    return ["provider:azure", f"project:{project_id}", f"ecosystem:{ecosystem}"]


class FeatureFlags:
    """Resolves the debug switch from the project and the configured targets.

    Targets are group names from ``targeting_groups``; any match enables debug.
    """

    def __init__(self, debug_targets: Iterable[str] = ()):
        self.debug_targets = {target.strip().lower() for target in debug_targets if target.strip()}

    def is_debug_enabled(self, project_id: str, ecosystem: str, project_debug: bool = False) -> bool:
        if project_debug:
            return True
        return any(group.lower() in self.debug_targets for group in targeting_groups(project_id, ecosystem))
