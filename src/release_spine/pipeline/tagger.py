"""Version tagger: trigger -> artifact coordinate.

Pure and deterministic. The same trigger always yields the same
:class:`ArtifactRef`, so a re-run of a revision republishes the same
coordinate and the publisher can detect it as already present.

Rules:
    - ``kind == tag``: the release tag (``ref_name`` without its
      ``refs/tags/`` prefix), sanitized to the registry tag grammar.
    - anything else (or a tag trigger whose name sanitizes to nothing):
      the first :data:`SHORT_SHA_LENGTH` characters of the revision.

Example:
    >>> t = Trigger(kind=TriggerKind.PUSH, revision="abc1234def", ref_name="main")
    >>> tag(t, "ghcr.io/acme/web").image
    'ghcr.io/acme/web:abc1234'

Tags:
    tagging, versioning, pure, release-spine
"""

from __future__ import annotations

import re

from release_spine.pipeline.models import ArtifactRef, Trigger, TriggerKind

SHORT_SHA_LENGTH = 7
MAX_TAG_LENGTH = 128

_TAG_PREFIX = "refs/tags/"
_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def sanitize_tag(name: str) -> str:
    """Coerce ``name`` into ``[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}``.

    Runs of invalid characters collapse to ``-``; leading ``.``/``-`` are
    dropped. Returns an empty string when nothing usable remains.
    """
    cleaned = _INVALID_CHARS.sub("-", name.strip())
    cleaned = cleaned.lstrip(".-")
    return cleaned[:MAX_TAG_LENGTH]


def tag(trigger: Trigger, repository: str) -> ArtifactRef:
    """Compute the artifact coordinate for ``trigger``."""
    if trigger.kind == TriggerKind.TAG:
        ref = trigger.ref_name
        if ref.startswith(_TAG_PREFIX):
            ref = ref[len(_TAG_PREFIX) :]
        release = sanitize_tag(ref)
        if release:
            return ArtifactRef(repository=repository, tag=release)
    return ArtifactRef(repository=repository, tag=trigger.revision[:SHORT_SHA_LENGTH])


__all__ = ["MAX_TAG_LENGTH", "SHORT_SHA_LENGTH", "sanitize_tag", "tag"]
