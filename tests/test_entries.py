"""
Versioned entry tests - base payloads, chapter-scoped overlays and position resolution.
"""

import threading

import pytest

from lorekeeper.core.config import POSITION_LATEST
from lorekeeper.core.entries import make_entry_id, make_version_id, merge_payload, normalize_key
from lorekeeper.core.errors import (
    AuthorizationError,
    DuplicateVersionError,
    InvalidInputError,
    InvalidRangeError,
    NotFoundError,
)
from lorekeeper.core.sqlite_store import SQLiteRecordStore
from lorekeeper.services import build_services

SCOPE = "work-1"
OWNER = "author-1"


@pytest.fixture
def entries(services):
    """Entry store with one claimed scope."""
    services.scopes.claim(SCOPE, OWNER)
    return services.entries


@pytest.fixture
def silver_blade(entries):
    entries.upsert_base(SCOPE, "Silver Blade", {"definition": "A type of sword"}, author_id=OWNER)
    return entries


class TestHelpers:
    """Test key normalization, ids and payload merging."""

    def test_normalize_key_is_case_insensitive(self):
        """Keys differing only in case or surrounding space normalize the same."""
        assert normalize_key("  Silver Blade ") == normalize_key("SILVER BLADE")

    def test_entry_id_includes_scope(self):
        """The same key in two scopes gives two entries."""
        assert make_entry_id("a", "Key") != make_entry_id("b", "Key")
        assert make_entry_id("a", "Key") == make_entry_id("a", "key")

    def test_version_id_ignores_payload_key_order(self):
        """Version ids are computed from a canonical payload."""
        first = make_version_id("e", 3, {"a": 1, "b": 2})
        second = make_version_id("e", 3, {"b": 2, "a": 1})
        assert first == second
        assert first != make_version_id("e", 4, {"a": 1, "b": 2})

    def test_merge_payload_overrides_and_falls_back(self):
        """Overlay fields win; absent and None fields keep the base value."""
        merged = merge_payload({"name": "Aria", "role": "Knight"}, {"role": "Traitor", "name": None})
        assert merged == {"name": "Aria", "role": "Traitor"}


class TestUpsertBase:
    """Test creating and replacing base payloads."""

    def test_create_entry(self, entries):
        """A new entry keeps the display casing of its key."""
        entry = entries.upsert_base(SCOPE, "Silver Blade", {"definition": "A type of sword"}, author_id=OWNER)

        assert entry.key == "Silver Blade"
        assert entry.version_count == 0
        assert entries.get_entry(SCOPE, "silver blade").payload == {"definition": "A type of sword"}

    def test_update_matches_case_insensitively(self, silver_blade, clock):
        """Upserting with different casing replaces the same entry's payload."""
        clock.advance(minutes=1)
        entry = silver_blade.upsert_base(SCOPE, "SILVER BLADE", {"definition": "A blade"}, author_id=OWNER)

        assert entry.key == "Silver Blade"
        assert entry.payload == {"definition": "A blade"}
        assert len(silver_blade.list_entries(SCOPE)) == 1

    def test_identical_payload_is_noop(self, silver_blade, clock):
        """Repeating an upsert does not touch the entry."""
        before = silver_blade.get_entry(SCOPE, "Silver Blade")
        clock.advance(minutes=1)
        after = silver_blade.upsert_base(SCOPE, "Silver Blade", {"definition": "A type of sword"}, author_id=OWNER)

        assert after.updated_at == before.updated_at

    def test_requires_scope_owner(self, entries):
        """Only the scope owner may author entries."""
        with pytest.raises(AuthorizationError):
            entries.upsert_base(SCOPE, "Key", {"a": 1}, author_id="someone-else")

    def test_unknown_scope_is_not_found(self, entries):
        """Writing into an unclaimed scope fails."""
        with pytest.raises(NotFoundError):
            entries.upsert_base("no-such-work", "Key", {"a": 1}, author_id=OWNER)

    def test_empty_key_rejected(self, entries):
        """Blank keys are invalid input."""
        with pytest.raises(InvalidInputError):
            entries.upsert_base(SCOPE, "   ", {"a": 1}, author_id=OWNER)

    def test_non_json_payload_rejected(self, entries):
        """Payloads must be storable as JSON."""
        with pytest.raises(InvalidInputError):
            entries.upsert_base(SCOPE, "Key", {"a": object()}, author_id=OWNER)


class TestAddVersion:
    """Test appending version overlays."""

    def test_effective_from_must_be_positive(self, silver_blade):
        """Positions start at chapter 1."""
        for bad in (0, -3):
            with pytest.raises(InvalidRangeError):
                silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "x"}, bad, author_id=OWNER)

    def test_until_before_from_rejected(self, silver_blade):
        """An overlay cannot end before it starts."""
        with pytest.raises(InvalidRangeError):
            silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "x"}, 5,
                                     author_id=OWNER, effective_until=4)

    def test_empty_payload_rejected(self, silver_blade):
        """An overlay with no fields is invalid input, not a range error."""
        with pytest.raises(InvalidInputError) as exc_info:
            silver_blade.add_version(SCOPE, "Silver Blade", {}, 2, author_id=OWNER)
        assert not isinstance(exc_info.value, InvalidRangeError)

    def test_unknown_entry(self, entries):
        """Overlays need an existing base entry."""
        with pytest.raises(NotFoundError):
            entries.add_version(SCOPE, "Ghost", {"definition": "x"}, 2, author_id=OWNER)

    def test_requires_scope_owner(self, silver_blade):
        """Readers cannot add overlays."""
        with pytest.raises(AuthorizationError):
            silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "x"}, 2, author_id="reader")

    def test_duplicate_version_rejected(self, silver_blade):
        """The same payload at the same position is stored once."""
        payload = {"definition": "A sword later revealed to be cursed"}
        silver_blade.add_version(SCOPE, "Silver Blade", payload, 5, author_id=OWNER)

        with pytest.raises(DuplicateVersionError):
            silver_blade.add_version(SCOPE, "silver blade", dict(payload), 5, author_id=OWNER)

        assert len(silver_blade.list_versions(SCOPE, "Silver Blade")) == 1
        assert silver_blade.get_entry(SCOPE, "Silver Blade").version_count == 1

    def test_same_payload_at_other_position_allowed(self, silver_blade):
        """Only the exact (payload, position) pair is a duplicate."""
        payload = {"definition": "cursed"}
        silver_blade.add_version(SCOPE, "Silver Blade", payload, 5, author_id=OWNER)
        silver_blade.add_version(SCOPE, "Silver Blade", payload, 7, author_id=OWNER)

        assert len(silver_blade.list_versions(SCOPE, "Silver Blade")) == 2

    def test_versions_are_append_only(self, silver_blade):
        """Earlier overlays are never rewritten by later ones."""
        first = silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "one"}, 2, author_id=OWNER)
        silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "two"}, 2, author_id=OWNER)

        history = silver_blade.list_versions(SCOPE, "Silver Blade")
        assert history[0].id == first.id
        assert history[0].payload == {"definition": "one"}
        assert [v.sequence for v in history] == [1, 2]

    def test_concurrent_writers_get_distinct_sequences(self, silver_blade):
        """Parallel overlay writes are serialized without losing any."""
        errors = []

        def add(position):
            try:
                silver_blade.add_version(SCOPE, "Silver Blade", {"definition": f"ch{position}"}, position,
                                         author_id=OWNER)
            except Exception as e:  # pragma: no cover - surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=add, args=(p,)) for p in range(1, 11)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        history = silver_blade.list_versions(SCOPE, "Silver Blade")
        assert sorted(v.sequence for v in history) == list(range(1, 11))
        assert silver_blade.get_entry(SCOPE, "Silver Blade").version_count == 10


class TestResolve:
    """Test resolving an entry at a reader's position."""

    def test_silver_blade_scenario(self, silver_blade):
        """Readers before chapter 5 never see the curse."""
        silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "A sword later revealed to be cursed"}, 5,
                                 author_id=OWNER)

        assert silver_blade.resolve(SCOPE, "Silver Blade", 3).payload == {"definition": "A type of sword"}
        assert silver_blade.resolve(SCOPE, "Silver Blade", 5).payload == {
            "definition": "A sword later revealed to be cursed"
        }
        assert silver_blade.resolve(SCOPE, "Silver Blade", POSITION_LATEST).payload == {
            "definition": "A sword later revealed to be cursed"
        }

    def test_each_interval_sees_its_version(self, entries):
        """Between two overlays the earlier one applies, merged over the base."""
        entries.upsert_base(SCOPE, "Aria", {"name": "Aria", "role": "Knight"}, author_id=OWNER)
        entries.add_version(SCOPE, "Aria", {"role": "Squire"}, 2, author_id=OWNER)
        entries.add_version(SCOPE, "Aria", {"role": "Traitor"}, 9, author_id=OWNER)
        entries.add_version(SCOPE, "Aria", {"role": "Captain"}, 5, author_id=OWNER)

        expected = {1: "Knight", 2: "Squire", 4: "Squire", 5: "Captain", 8: "Captain", 9: "Traitor", 50: "Traitor"}
        for position, role in expected.items():
            resolved = entries.resolve(SCOPE, "aria", position)
            assert resolved.payload == {"name": "Aria", "role": role}, position

    def test_base_only_has_no_version(self, silver_blade):
        """Without a qualifying overlay the base is returned as is."""
        resolved = silver_blade.resolve(SCOPE, "Silver Blade", 1)

        assert resolved.version_id is None
        assert resolved.effective_from is None

    def test_sentinel_matches_latest_version(self, entries):
        """The most-current sentinel resolves like the greatest effective_from."""
        entries.upsert_base(SCOPE, "Aria", {"role": "Knight"}, author_id=OWNER)
        entries.add_version(SCOPE, "Aria", {"role": "Squire"}, 2, author_id=OWNER)
        entries.add_version(SCOPE, "Aria", {"role": "Traitor"}, 12, author_id=OWNER, effective_until=14)

        latest = entries.resolve(SCOPE, "Aria", POSITION_LATEST)
        assert latest.payload == entries.resolve(SCOPE, "Aria", 12).payload
        assert latest.effective_from == 12

    def test_tie_on_effective_from_prefers_latest_created(self, silver_blade, clock):
        """Two overlays at one position: the newer one wins."""
        silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "first"}, 4, author_id=OWNER)
        clock.advance(seconds=30)
        silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "second"}, 4, author_id=OWNER)

        assert silver_blade.resolve(SCOPE, "Silver Blade", 4).payload["definition"] == "second"

    def test_tie_on_created_at_prefers_later_sequence(self, silver_blade):
        """A frozen clock still gives a reproducible winner."""
        silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "first"}, 4, author_id=OWNER)
        silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "second"}, 4, author_id=OWNER)

        for _ in range(3):
            assert silver_blade.resolve(SCOPE, "Silver Blade", 6).payload["definition"] == "second"

    def test_effective_until_bounds_version(self, silver_blade):
        """A bounded overlay stops applying after its last chapter."""
        silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "glowing"}, 3, author_id=OWNER,
                                 effective_until=5)

        assert silver_blade.resolve(SCOPE, "Silver Blade", 5).payload["definition"] == "glowing"
        assert silver_blade.resolve(SCOPE, "Silver Blade", 6).payload["definition"] == "A type of sword"

    def test_positions_stay_below_latest_sentinel(self, silver_blade):
        """Overlays may not start or end at the most-current sentinel."""
        for bad in (POSITION_LATEST, POSITION_LATEST + 1):
            with pytest.raises(InvalidRangeError):
                silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "x"}, bad, author_id=OWNER)
        with pytest.raises(InvalidRangeError):
            silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "x"}, 5,
                                     author_id=OWNER, effective_until=POSITION_LATEST)

        assert silver_blade.list_versions(SCOPE, "Silver Blade") == []

    def test_last_position_before_sentinel_resolves_as_latest(self, silver_blade):
        """The highest legal overlay is what the sentinel resolves to."""
        silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "legendary"}, POSITION_LATEST - 1,
                                 author_id=OWNER)
        silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "glowing"}, 3, author_id=OWNER)

        latest = silver_blade.resolve(SCOPE, "Silver Blade", POSITION_LATEST)
        assert latest.payload["definition"] == "legendary"
        assert latest.effective_from == POSITION_LATEST - 1

    def test_negative_position_rejected(self, silver_blade):
        """Positions are never negative."""
        with pytest.raises(InvalidRangeError):
            silver_blade.resolve(SCOPE, "Silver Blade", -1)

    def test_unknown_entry(self, entries):
        """Resolving a missing key fails with not found."""
        with pytest.raises(NotFoundError):
            entries.resolve(SCOPE, "Ghost", 3)

    def test_resolve_all(self, silver_blade):
        """A whole scope resolves at one position, ordered by key."""
        silver_blade.upsert_base(SCOPE, "aria", {"role": "Knight"}, author_id=OWNER)
        silver_blade.add_version(SCOPE, "Aria", {"role": "Traitor"}, 8, author_id=OWNER)

        early = silver_blade.resolve_all(SCOPE, 2)
        late = silver_blade.resolve_all(SCOPE, 8)

        assert [r.key for r in early] == ["aria", "Silver Blade"]
        assert early[0].payload == {"role": "Knight"}
        assert late[0].payload == {"role": "Traitor"}


class TestAuditTrail:
    """Test that entry writes leave audit events."""

    def test_version_add_is_recorded(self, services, silver_blade):
        """Events are listed newest first."""
        silver_blade.add_version(SCOPE, "Silver Blade", {"definition": "cursed"}, 5, author_id=OWNER)

        events = services.events.list_events(SCOPE)
        assert events[0].action == "entry_version_added"
        assert events[0].actor == OWNER
        assert "entry_base_created" in [e.action for e in events]


class TestSQLiteBackend:
    """Run the core scenario against the durable store."""

    def test_silver_blade_on_sqlite(self, tmp_path, clock):
        """Resolution does not depend on the storage engine."""
        services = build_services(store=SQLiteRecordStore(str(tmp_path / "lore.db")), clock=clock)
        services.scopes.claim(SCOPE, OWNER)
        services.entries.upsert_base(SCOPE, "Silver Blade", {"definition": "A type of sword"}, author_id=OWNER)
        services.entries.add_version(SCOPE, "Silver Blade", {"definition": "cursed"}, 5, author_id=OWNER)

        assert services.entries.resolve(SCOPE, "silver blade", 3).payload == {"definition": "A type of sword"}
        assert services.entries.resolve(SCOPE, "silver blade", POSITION_LATEST).payload == {"definition": "cursed"}

        with pytest.raises(DuplicateVersionError):
            services.entries.add_version(SCOPE, "Silver Blade", {"definition": "cursed"}, 5, author_id=OWNER)
