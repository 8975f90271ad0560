from dataclasses import dataclass
from typing import Any

from carelink.models import Notification

PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}

# Breaks ties between matches of equal priority; higher wins.
CATEGORY_PRECEDENCE = {"alert": 5, "appointment": 4, "prescription": 3, "lab": 2, "user": 1}


@dataclass(frozen=True)
class Classification:
    category: str
    priority: str
    icon: str
    color: str


@dataclass(frozen=True)
class _Rule:
    keywords: tuple[str, ...]
    classification: Classification


CLASSIFICATION_RULES: tuple[_Rule, ...] = (
    _Rule(("alert",),         Classification("alert",        "high",   "alert-circle", "#FF3B30")),
    _Rule(("appointment",),   Classification("appointment",  "medium", "calendar",     "#34C759")),
    _Rule(("prescription",),  Classification("prescription", "medium", "medkit",       "#FF9500")),
    _Rule(("lab", "test"),    Classification("lab",          "medium", "flask",        "#AF52DE")),
    _Rule(("user",),          Classification("user",         "medium", "person-add",   "#007AFF")),
)

DEFAULT_CLASSIFICATION = Classification("system", "low", "construct", "#5856D6")


def _signals(notification: Notification | dict[str, Any]) -> list[str]:
    if isinstance(notification, Notification):
        kind, metadata = notification.type, notification.metadata
    else:
        kind, metadata = notification.get("type"), notification.get("metadata")
    event = metadata.get("event") if isinstance(metadata, dict) else None
    return [str(s).lower() for s in (kind, event) if s]


def classify(notification: Notification | dict[str, Any]) -> Classification:
    """Presentation class (priority, icon, colour) for a notification.

    Every matching rule is considered. The highest priority wins, then the
    highest `CATEGORY_PRECEDENCE`, so neither rule order nor signal order
    affects the result. Identity is never derived from this.
    """
    signals = _signals(notification)
    matches = [
        rule.classification
        for rule in CLASSIFICATION_RULES
        if any(kw in s for kw in rule.keywords for s in signals)
    ]
    if not matches:
        return DEFAULT_CLASSIFICATION
    return max(
        matches,
        key=lambda c: (PRIORITY_RANK[c.priority], CATEGORY_PRECEDENCE[c.category]),
    )
