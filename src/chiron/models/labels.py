"""
Therapeutic tag labels.

Tags are free-form strings, but they are normalized and validated at write
time and interned so repeated labels share one object. A label may carry a
namespace prefix ("concern:anxiety", "technique:mindfulness") that tells the
aggregator how to interpret it. New namespaces can be registered at runtime.
"""

import re
import sys
from typing import Iterable, Optional

CONCERN = "concern"
TECHNIQUE = "technique"
EMOTION = "emotion"
SIGNAL = "signal"

# Tag applied to both messages of a crisis turn
SYSTEM_SAFETY_TAG = "system-safety"

_NAMESPACES: set[str] = {CONCERN, TECHNIQUE, EMOTION, SIGNAL}

_LABEL_RE = re.compile(r"^[a-z0-9][a-z0-9_\-]*(?::[a-z0-9][a-z0-9_\-]*)?$")


class InvalidLabelError(ValueError):
    """Raised for tag labels that cannot be normalized into a valid label."""


def register_namespace(namespace: str) -> None:
    """Register an additional label namespace (extension point)."""
    normalized = namespace.strip().lower()
    if not re.fullmatch(r"[a-z][a-z0-9_\-]*", normalized):
        raise InvalidLabelError(f"Invalid label namespace: {namespace!r}")
    _NAMESPACES.add(normalized)


def known_namespaces() -> frozenset[str]:
    return frozenset(_NAMESPACES)


def normalize_label(raw: str, strict: bool = True) -> str:
    """Normalize and validate a tag label.

    Lowercases, trims, and turns inner whitespace into underscores. With
    strict set, a namespaced label must use a registered namespace; persisted
    records are read with strict=False so labels from namespaces registered
    in another process still load.

    Raises:
        InvalidLabelError: If the label is empty or malformed
    """
    if not isinstance(raw, str):
        raise InvalidLabelError(f"Label must be a string, got {type(raw).__name__}")

    label = re.sub(r"\s+", "_", raw.strip().lower())
    if not _LABEL_RE.match(label):
        raise InvalidLabelError(f"Invalid label: {raw!r}")

    namespace = label_namespace(label)
    if strict and namespace is not None and namespace not in _NAMESPACES:
        raise InvalidLabelError(f"Unknown label namespace {namespace!r} in {raw!r}")

    return sys.intern(label)


def normalize_labels(raw_labels: Iterable[str], strict: bool = True) -> frozenset[str]:
    return frozenset(normalize_label(raw, strict=strict) for raw in raw_labels)


def make_label(namespace: str, name: str) -> str:
    return normalize_label(f"{namespace}:{name}")


def label_namespace(label: str) -> Optional[str]:
    if ":" not in label:
        return None
    return label.split(":", 1)[0]


def label_name(label: str) -> str:
    return label.split(":", 1)[-1]


def labels_in_namespace(labels: Iterable[str], namespace: str) -> set[str]:
    """Return the bare names of labels belonging to a namespace."""
    return {label_name(label) for label in labels if label_namespace(label) == namespace}
