import pytest

from tallybot.core.mentions import MentionResolver, normalize_name
from tallybot.errors import ExcludeAllMembers, UnresolvedMention
from tallybot.models.schemas import RosterEntry

ROSTER = [
    RosterEntry(id="u1", name="Alice"),
    RosterEntry(id="u2", name="Gonzalo", aliases=["gonza"]),
    RosterEntry(id="u3", name="María José", aliases=["majo"]),
]


@pytest.fixture
def resolver():
    return MentionResolver()


def test_normalize_strips_accents_and_symbols():
    assert normalize_name("María José") == "mariajose"
    assert normalize_name("@Gonza!") == "gonza"


def test_exact_name_and_alias(resolver):
    assert resolver.match("alice", ROSTER).id == "u1"
    assert resolver.match("majo", ROSTER).id == "u3"


def test_accents_and_case_do_not_matter(resolver):
    assert resolver.match("MARIA JOSE", ROSTER).id == "u3"


def test_prefix_of_name_matches(resolver):
    assert resolver.match("Gonz", ROSTER).id == "u2"


def test_short_or_unknown_tokens_are_rejected(resolver):
    assert resolver.match("a", ROSTER) is None
    assert resolver.match("Zzyx", ROSTER) is None
    assert resolver.match("Alice", []) is None


def test_resolve_reports_unresolved_and_dedups(resolver):
    result = resolver.resolve(["Alice", "alice", "Zzyx"], ROSTER)
    assert result.resolved_ids == ["u1"]
    assert result.resolved_names == ["Alice"]
    assert result.unresolved == ["Zzyx"]


def test_exclude_returns_remaining_members(resolver):
    remaining = resolver.exclude(["Gonza"], ROSTER)
    assert [e.id for e in remaining] == ["u1", "u3"]


def test_exclude_unknown_name_raises(resolver):
    with pytest.raises(UnresolvedMention) as excinfo:
        resolver.exclude(["Zzyx"], ROSTER, "Trip")
    assert excinfo.value.names == ["Zzyx"]
    assert "Zzyx" in excinfo.value.user_message
    assert "Trip" in excinfo.value.user_message


def test_exclude_everyone_raises(resolver):
    with pytest.raises(ExcludeAllMembers):
        resolver.exclude(["Alice", "Gonzalo", "Majo"], ROSTER)
