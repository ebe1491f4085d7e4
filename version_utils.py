"""Version tag utilities for registry tags.

Classifies tags as version-like, orders dotted numeric versions and picks
the newest candidate out of a registry tag list.
"""

import re
from typing import Iterable, List


UNKNOWN = "unknown"

SEMANTIC_TAG_RE = re.compile(r"^v?[0-9]+(\.[0-9]+)*$")

# Substrings that disqualify a tag from latest-version candidacy
_BLOCKED_WORDS = (
    "latest", "main", "master", "dev", "develop", "nightly",
    "alpha", "beta", "sha256", "digest",
)


# ---------------------------------------------------------------------------
# Internal Helper Functions
# ---------------------------------------------------------------------------

def _segment_value(segment: str) -> int:
    """Leading digits of a segment as an int; 0 when there are none."""
    match = re.match(r"[0-9]*", segment)
    digits = match.group(0) if match else ""
    return int(digits) if digits else 0


def _segments(version: str) -> List[int]:
    return [_segment_value(part) for part in normalize(version).split(".")]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def is_semantic(tag: str) -> bool:
    """True if the tag looks like 1, 1.2, v1.2.3, 2025.10.5, ..."""
    return bool(tag) and SEMANTIC_TAG_RE.match(tag) is not None


def normalize(tag: str) -> str:
    """Strip a single leading 'v'."""
    return tag[1:] if tag.startswith("v") else tag


def compare(a: str, b: str) -> int:
    """Compare two dotted numeric versions.

    Returns 1 if a > b, -1 if a < b and 0 when equal. Missing segments
    count as 0, so '2.0' == '2.0.0' and '2.0' > '1.9.9'.
    """
    parts_a = _segments(a)
    parts_b = _segments(b)

    length = max(len(parts_a), len(parts_b))
    parts_a += [0] * (length - len(parts_a))
    parts_b += [0] * (length - len(parts_b))

    for left, right in zip(parts_a, parts_b):
        if left > right:
            return 1
        if left < right:
            return -1
    return 0


def is_candidate_tag(tag: str) -> bool:
    """A tag may become 'latest' only if it is semantic and not blocklisted."""
    low = tag.lower()
    if any(word in low for word in _BLOCKED_WORDS):
        return False
    return is_semantic(tag)


def pick_latest(tags: Iterable[str]) -> str:
    """Return the highest candidate tag, or UNKNOWN when none qualifies.

    Among tags that compare equal (e.g. 'v1.0' and '1.0.0') the first one
    seen is kept.
    """
    latest = None
    for tag in tags:
        if not tag or not is_candidate_tag(tag):
            continue
        if latest is None or compare(tag, latest) > 0:
            latest = tag
    return latest if latest is not None else UNKNOWN
