"""Fuzzy resolution of free-text names against a group roster."""

import re
import unicodedata
from dataclasses import dataclass, field

from loguru import logger
from rapidfuzz import fuzz

from tallybot.errors import ExcludeAllMembers, UnresolvedMention
from tallybot.models.schemas import RosterEntry

MENTION_DISTANCE_THRESHOLD = 0.35
MIN_TOKEN_LENGTH = 2


def normalize_name(text: str) -> str:
    """Lowercase, strip diacritics and drop everything that isn't a-z0-9."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r"[^a-z0-9]", "", stripped)


def _similarity(token: str, key: str) -> float:
    # Shorter tokens are nicknames or prefixes ("gonza" → "gonzalo"): match anywhere in the key.
    if len(token) < len(key):
        return fuzz.partial_ratio(token, key)
    return fuzz.ratio(token, key)


@dataclass
class MentionResolution:
    resolved_ids: list[str] = field(default_factory=list)
    resolved_names: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)


class MentionResolver:
    def __init__(
        self,
        threshold: float = MENTION_DISTANCE_THRESHOLD,
        min_length: int = MIN_TOKEN_LENGTH,
    ):
        self.threshold = threshold
        self.min_length = min_length

    def match(self, token: str, roster: list[RosterEntry]) -> RosterEntry | None:
        """Best roster entry for ``token``, or None when nothing is close enough."""
        normalized = normalize_name(token or "")
        if len(normalized) < self.min_length or not roster:
            return None

        best: RosterEntry | None = None
        best_distance = 1.0
        for entry in roster:
            keys = [normalize_name(a) for a in entry.aliases] + [normalize_name(entry.name)]
            keys = [k for k in keys if k]
            if not keys:
                continue
            distance = 1 - max(_similarity(normalized, k) for k in keys) / 100
            # Strict < keeps the first roster entry on ties.
            if distance < best_distance:
                best, best_distance = entry, distance

        if best is None or best_distance >= self.threshold:
            logger.debug("Mention {!r} unresolved (best distance {:.2f})", token, best_distance)
            return None
        return best

    def resolve(self, tokens: list[str], roster: list[RosterEntry]) -> MentionResolution:
        """Resolve each token; a participant is only reported once."""
        result = MentionResolution()
        for token in tokens:
            matched = self.match(token, roster)
            if matched is None:
                result.unresolved.append(token)
            elif matched.id not in result.resolved_ids:
                result.resolved_ids.append(matched.id)
                result.resolved_names.append(matched.name)
        return result

    def exclude(
        self,
        names: list[str],
        roster: list[RosterEntry],
        group_name: str | None = None,
    ) -> list[RosterEntry]:
        """Roster minus the resolved ``names``.

        Raises UnresolvedMention when a name to exclude is unknown and
        ExcludeAllMembers when nobody would be left.
        """
        resolution = self.resolve(names, roster)
        if resolution.unresolved:
            raise UnresolvedMention(resolution.unresolved, group_name)

        remaining = [entry for entry in roster if entry.id not in resolution.resolved_ids]
        if not remaining:
            raise ExcludeAllMembers()
        return remaining
