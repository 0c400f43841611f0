"""Tests for the chain verification engine."""

import json

import pytest

from activitylog.chain.append import ChainWriter
from activitylog.chain.entry import ActivityTarget, ActorRef, canonical_content
from activitylog.chain.verify import ChainVerifier, FailedCheck
from activitylog.crypto.signatures import KeyRing
from activitylog.errors import ChainStorageError
from activitylog.storage.models import ActivityRecord

# ======================================================================
# Clean chains
# ======================================================================


def test_empty_chain(verifier):
    for mode in ("quick", "full"):
        result = verifier.verify(mode)
        assert result.valid
        assert result.entries_checked == 0
        assert result.total_entries == 0
        assert result.first_failure is None


def test_three_entry_example(verifier, append_entries, execute_sql):
    e0, e1, e2 = append_entries(3)

    result = verifier.verify("full")
    assert result.valid
    assert result.entries_checked == 3
    assert (result.range_start, result.range_end) == (0, 2)

    execute_sql("UPDATE activities SET resource = 'settings' WHERE id = :id", id=e1.id)

    result = verifier.verify("full")
    assert not result.valid
    assert result.first_failure.entry_id == e1.id
    assert result.first_failure.position == 1
    assert result.first_failure.failed_check == FailedCheck.CONTENT_HASH
    assert FailedCheck.SIGNATURE in result.first_failure.failed_checks
    assert result.entries_checked == 2


def test_quick_and_full_agree_on_clean_chain(verifier, append_entries):
    append_entries(12)
    quick = verifier.verify("quick")
    full = verifier.verify("full")
    assert quick.valid and full.valid
    assert quick.entries_checked == 5
    assert (quick.range_start, quick.range_end) == (7, 11)
    assert full.entries_checked == 12
    assert quick.total_entries == full.total_entries == 12


def test_quick_limit_override(verifier, append_entries):
    append_entries(4)
    result = verifier.verify("quick", limit=100)
    assert result.valid
    assert result.entries_checked == 4
    assert result.range_start == 0


def test_failed_check_serializes_to_wire_names(verifier, append_entries, execute_sql):
    (entry,) = append_entries(1)
    execute_sql("UPDATE activities SET action = 'delete' WHERE id = :id", id=entry.id)
    payload = json.loads(verifier.verify("full").model_dump_json())
    assert payload["first_failure"]["failed_check"] == "contentHash"
    assert payload["valid"] is False


# ======================================================================
# Tampering
# ======================================================================


class TestTamperDetection:
    """Altering any stored field is detected at that entry and no earlier."""

    @pytest.mark.parametrize(
        "column, value",
        [
            ("action", "'delete'"),
            ("resource", "'roles'"),
            ("resource_id", "'someone-else'"),
            ("actor_id", "'u-evil'"),
            ("actor", "'{\"kind\": \"system\", \"id\": \"system\"}'"),
            ("target", "'{\"type\": \"user\", \"id\": \"x\"}'"),
            ("metadata", "'{\"ip_address\": \"6.6.6.6\"}'"),
            ("changes", "'[]'"),
            ("created_at", "'2020-01-01 00:00:00.000000'"),
            ("previous_hash", "'" + "f" * 64 + "'"),
            ("content_hash", "'" + "e" * 64 + "'"),
        ],
    )
    def test_single_field(self, verifier, append_entries, execute_sql, column, value):
        entries = append_entries(5)
        victim = entries[2]
        assert execute_sql(f"UPDATE activities SET {column} = {value} WHERE id = :id", id=victim.id) == 1

        result = verifier.verify("full", stop_at_first_failure=False)
        assert not result.valid
        assert result.first_failure.position == 2
        assert result.first_failure.entry_id == victim.id
        assert result.first_failure.failed_check == FailedCheck.CONTENT_HASH
        assert [f.position for f in result.failures] == [2]

    def test_signature_only(self, verifier, keyring, append_entries, execute_sql, database):
        entries = append_entries(3)
        with database.session() as session:
            canonical = canonical_content(session.get(ActivityRecord, entries[1].id).content())
        forged = KeyRing("attacker-key").sign(canonical)
        execute_sql("UPDATE activities SET signature = :sig WHERE id = :id", sig=forged, id=entries[1].id)

        result = verifier.verify("full")
        assert not result.valid
        assert result.first_failure.position == 1
        assert result.first_failure.failed_checks == [FailedCheck.SIGNATURE]

    def test_entry_forged_outside_the_application(self, database, verifier, append_entries):
        """A well-formed, correctly linked entry signed with an unknown key."""
        append_entries(2)
        rogue = ChainWriter(database.SessionLocal, keyring=KeyRing("rogue-key"))
        forged = rogue.append(ActorRef.for_user("u-evil"), "update", "roles", ActivityTarget(type="role", id="admin"))

        result = verifier.verify("full")
        assert not result.valid
        assert result.first_failure.entry_id == forged.id
        assert result.first_failure.failed_checks == [FailedCheck.SIGNATURE]

    def test_tampering_outside_quick_window_is_not_seen(self, verifier, append_entries, execute_sql):
        entries = append_entries(10)
        execute_sql("UPDATE activities SET action = 'x' WHERE id = :id", id=entries[0].id)
        assert verifier.verify("quick").valid
        assert not verifier.verify("full").valid

    def test_aggregate_scan_reports_every_failure(self, verifier, append_entries, execute_sql):
        entries = append_entries(7)
        for victim in (entries[1], entries[5]):
            execute_sql("UPDATE activities SET resource = 'x' WHERE id = :id", id=victim.id)

        stopped = verifier.verify("full")
        assert stopped.entries_checked == 2
        assert len(stopped.failures) == 1

        scan = verifier.verify("full", stop_at_first_failure=False)
        assert scan.entries_checked == 7
        assert [f.position for f in scan.failures] == [1, 5]
        assert scan.first_failure.position == 1


# ======================================================================
# Link breaks
# ======================================================================


class TestLinkBreaks:
    def test_deleted_middle_entry(self, verifier, append_entries, execute_sql):
        entries = append_entries(5)
        execute_sql("DELETE FROM activities WHERE id = :id", id=entries[2].id)

        result = verifier.verify("full")
        assert not result.valid
        assert result.first_failure.position == 3
        assert result.first_failure.entry_id == entries[3].id
        assert result.first_failure.failed_checks == [FailedCheck.CHAIN_LINK]
        assert result.first_failure.expected == entries[1].content_hash
        assert result.first_failure.actual == entries[2].content_hash

    def test_deleted_first_entry_without_anchor(self, verifier, append_entries, execute_sql):
        entries = append_entries(3)
        execute_sql("DELETE FROM activities WHERE id = :id", id=entries[0].id)

        result = verifier.verify("full")
        assert not result.valid
        assert result.first_failure.position == 1
        assert result.first_failure.failed_check == FailedCheck.CHAIN_LINK

    def test_gap_just_before_quick_window(self, verifier, append_entries, execute_sql):
        entries = append_entries(8)
        # window is positions 3..7; remove its predecessor
        execute_sql("DELETE FROM activities WHERE id = :id", id=entries[2].id)

        result = verifier.verify("quick")
        assert not result.valid
        assert result.first_failure.position == 3
        assert result.first_failure.failed_check == FailedCheck.CHAIN_LINK


# ======================================================================
# Incremental full scans
# ======================================================================


def test_bounded_full_scan_resumes(verifier, append_entries):
    append_entries(7)

    first = verifier.verify("full", limit=3)
    assert first.valid
    assert (first.range_start, first.range_end, first.next_start) == (0, 2, 3)

    second = verifier.verify("full", limit=3, start=first.next_start)
    assert second.valid
    assert (second.range_start, second.range_end, second.next_start) == (3, 5, 6)

    last = verifier.verify("full", limit=3, start=second.next_start)
    assert last.valid
    assert last.entries_checked == 1
    assert last.next_start is None


def test_resumed_scan_checks_link_into_range(verifier, append_entries, execute_sql):
    entries = append_entries(6)
    execute_sql("DELETE FROM activities WHERE id = :id", id=entries[2].id)
    result = verifier.verify("full", start=3)
    assert not result.valid
    assert result.first_failure.position == 3


# ======================================================================
# Key rotation
# ======================================================================


def test_key_rotation_is_transparent(database, clock):
    old_ring = KeyRing("key-2025")
    ChainWriter(database.SessionLocal, keyring=old_ring, clock=clock).append(
        ActorRef.for_user("u-1"), "create", "users", ActivityTarget(type="user", id="a")
    )
    ChainWriter(database.SessionLocal, keyring=old_ring, clock=clock).append(
        ActorRef.for_user("u-1"), "create", "users", ActivityTarget(type="user", id="b")
    )

    new_ring = old_ring.rotated("key-2026")
    new_entry = ChainWriter(database.SessionLocal, keyring=new_ring, clock=clock).append(
        ActorRef.for_user("u-1"), "create", "users", ActivityTarget(type="user", id="c")
    )

    assert ChainVerifier(database.SessionLocal, keyring=new_ring).verify("full").valid

    with database.session() as session:
        records = session.query(ActivityRecord).order_by(ActivityRecord.sequence).all()
        current = [new_ring.is_signed_with_current_key(canonical_content(r.content()), r.signature) for r in records]
    assert current == [False, False, True]
    assert records[-1].id == new_entry.id

    # dropping the legacy key leaves the old entries unverifiable
    result = ChainVerifier(database.SessionLocal, keyring=KeyRing("key-2026")).verify("full")
    assert not result.valid
    assert result.first_failure.position == 0
    assert result.first_failure.failed_checks == [FailedCheck.SIGNATURE]


# ======================================================================
# Errors
# ======================================================================


def test_storage_error_is_raised_not_reported(bare_database, keyring):
    with pytest.raises(ChainStorageError):
        ChainVerifier(bare_database.SessionLocal, keyring=keyring).verify("full")


def test_rejects_bad_arguments(verifier):
    with pytest.raises(ValueError):
        verifier.verify("deep")
    with pytest.raises(ValueError):
        verifier.verify("full", limit=0)
    with pytest.raises(ValueError):
        verifier.verify("quick", start=3)
