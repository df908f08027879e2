"""GitHub label application for Prism."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Protocol

from .config import LabelsConfig


logger = logging.getLogger(__name__)

LABEL_DELAY = 0.2

LABEL_COLORS: dict[str, tuple[str, str]] = {
    "duplicate": ("d93f0b", "Duplicate or near-duplicate of another PR"),
    "aligned": ("0e8a16", "Aligned with project vision"),
    "drifting": ("fbca04", "Partially aligned - may need refocusing"),
    "off_vision": ("e11d48", "Does not align with project vision"),
    "top_pick": ("5319e7", "Best PR in its duplicate cluster"),
}


class LabelTarget(Protocol):
    def apply_label(self, number: int, label: str) -> None: ...

    def remove_label(self, number: int, label: str) -> None: ...

    def ensure_label(self, label: str, color: str, description: str) -> None: ...


@dataclass
class LabelAction:
    number: int
    action: str  # add, remove
    label: str
    reason: str


def ensure_labels_exist(github: LabelTarget, labels: LabelsConfig) -> None:
    """Create every configured Prism label that is missing on the repository."""
    for key, name in labels.items():
        color, description = LABEL_COLORS[key]
        github.ensure_label(name, color, description)


def apply_label_actions(
    github: LabelTarget,
    actions: list[LabelAction],
    dry_run: bool = False,
    delay: float = LABEL_DELAY,
) -> list[LabelAction]:
    """Apply label actions in order. Dry runs return the actions untouched."""
    if dry_run:
        return actions

    for action in actions:
        if action.action == "add":
            github.apply_label(action.number, action.label)
        else:
            github.remove_label(action.number, action.label)
        logger.debug("%s %s on #%d (%s)", action.action, action.label, action.number, action.reason)
        time.sleep(delay)

    return actions
