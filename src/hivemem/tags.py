"""Hierarchical tag rules.

A tag is a lowercase path of segments joined by ``:``, e.g.
``database:postgresql:extensions``. Paths are depth-bounded, never repeat
a segment, and never end on their own root segment.
"""

from __future__ import annotations

import re
import logging
from dataclasses import dataclass
from typing import Iterable

from src.hivemem.errors import ValidationError

logger = logging.getLogger(__name__)

DELIMITER = ":"
DEFAULT_MAX_DEPTH = 4

TAG_FORMAT = re.compile(r"^[a-z0-9\-]+(:[a-z0-9\-]+)*$")

# Replies that ask for input instead of producing tags
META_RESPONSE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"please provide",
        r"provide the text",
        r"provide me with",
        r"i need the text",
        r"i am ready",
        r"waiting for",
        r"send me the",
        r"what text would you",
        r"what would you like",
        r"cannot extract.*without",
        r"no text provided",
    )
]

_BULLET = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


@dataclass
class TagHierarchy:
    """Decomposed tag path."""
    full: str
    root: str
    parent: str | None
    levels: list[str]

    @property
    def depth(self) -> int:
        return len(self.levels)


def parse_hierarchy(path: str) -> TagHierarchy:
    levels = path.split(DELIMITER)
    return TagHierarchy(
        full=path,
        root=levels[0],
        parent=DELIMITER.join(levels[:-1]) if len(levels) > 1 else None,
        levels=levels,
    )


def ancestors(path: str) -> list[str]:
    """Proper prefixes of a path, shortest first."""
    levels = path.split(DELIMITER)
    return [DELIMITER.join(levels[:i]) for i in range(1, len(levels))]


def validation_error(path: str, max_depth: int = DEFAULT_MAX_DEPTH) -> str | None:
    """Return why ``path`` is not a valid tag, or None if it is."""
    if not path or not TAG_FORMAT.match(path):
        return "must be lowercase alphanumeric/hyphen segments joined by ':'"

    levels = path.split(DELIMITER)
    if len(levels) > max_depth:
        return f"depth {len(levels)} exceeds maximum of {max_depth}"
    if len(levels) > 1 and levels[0] == levels[-1]:
        return "leaf segment repeats the root segment"
    if len(set(levels)) != len(levels):
        return "segment repeated within path"
    return None


def is_valid_tag(path: str, max_depth: int = DEFAULT_MAX_DEPTH) -> bool:
    return validation_error(path, max_depth) is None


def validate_tags(tags: Iterable[str], max_depth: int = DEFAULT_MAX_DEPTH) -> list[str]:
    """Validate caller-supplied tags. Raises ValidationError on the first bad one."""
    result = []
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError(f"Tag must be a string: {tag!r}")
        reason = validation_error(tag, max_depth)
        if reason:
            raise ValidationError(f"Invalid tag '{tag}': {reason}")
        if tag not in result:
            result.append(tag)
    return result


def is_meta_response(text: str) -> bool:
    return any(p.search(text) for p in META_RESPONSE_PATTERNS)


def parse_tag_response(raw: str | Iterable[str] | None) -> list[str]:
    """Normalise a provider reply into candidate tag strings.

    Accepts a newline-separated string or a list. Strips bullets and
    whitespace, lowercases, drops blanks, de-duplicates in order.
    """
    if raw is None:
        return []
    lines = raw.splitlines() if isinstance(raw, str) else [str(t) for t in raw]

    result = []
    for line in lines:
        tag = _BULLET.sub("", line).strip().strip("`\"'").strip().lower()
        if tag and tag not in result:
            result.append(tag)
    return result


def filter_extracted_tags(
    raw: str | Iterable[str] | None,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> list[str]:
    """Keep only structurally valid, non-meta tags from a provider reply."""
    if isinstance(raw, str) and is_meta_response(raw):
        logger.warning("Discarding meta response from tag provider: %.80s", raw)
        return []

    valid = []
    for tag in parse_tag_response(raw):
        if is_meta_response(tag):
            logger.warning("Discarding meta tag: %.80s", tag)
            continue
        reason = validation_error(tag, max_depth)
        if reason:
            logger.warning("Discarding invalid tag '%s': %s", tag, reason)
            continue
        valid.append(tag)
    return valid
