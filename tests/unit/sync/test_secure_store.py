"""Tests for the encrypted offline store.

Covers the round-trip law, expiry, integrity failures, access control,
purge hooks, conflict persistence, snapshot import/export and the audit
trail every PHI access must leave behind.
"""

import json

import pytest

from omnicare_sync.audit.audit_logger import AuditAction, AuditSeverity
from omnicare_sync.core.exceptions import (
    AccessDeniedError,
    EncryptionKeyUnavailableError,
    IntegrityError,
    InvalidTransitionError,
    NotFoundError,
)
from omnicare_sync.models.sync import (
    ConflictResolution,
    ConflictType,
    DataClassification,
    ResolutionWinner,
    StoredRecord,
    SyncConflict,
    SyncOperation,
    SyncStatus,
)
from omnicare_sync.sync.backends import ACCESS_CONTROL, RECORDS
from omnicare_sync.sync.secure_store import SecureLocalStore


def make_record(resource_id="p1", classification=DataClassification.PHI, **kwargs):
    payload = kwargs.pop(
        "payload",
        {
            "resourceType": "Patient",
            "id": resource_id,
            "name": [{"family": "Okafor", "given": ["Ada"]}],
            "birthDate": "1984-03-02",
        },
    )
    return StoredRecord(
        id=resource_id,
        resource_type="Patient",
        payload=payload,
        classification=classification,
        **kwargs,
    )


class TestRoundTrip:
    """put/get round-trip."""

    @pytest.mark.asyncio
    @pytest.mark.phi_encryption
    async def test_get_returns_original_payload(self, store):
        record = make_record()
        await store.put(record)

        loaded = await store.get("Patient", "p1")

        assert loaded.payload == record.payload
        assert loaded.classification == DataClassification.PHI
        assert loaded.sync_status == SyncStatus.PENDING

    @pytest.mark.asyncio
    @pytest.mark.parametrize("classification", list(DataClassification))
    async def test_round_trip_for_every_classification(self, store, classification):
        record = make_record(classification=classification)
        await store.put(record)

        loaded = await store.get("Patient", "p1")

        assert loaded.payload == record.payload

    @pytest.mark.asyncio
    @pytest.mark.phi_encryption
    async def test_payload_is_not_stored_in_plaintext(self, store, backend):
        await store.put(make_record())

        row = backend.get(RECORDS, "Patient/p1")

        assert "Okafor" not in json.dumps(row)
        assert row["key_bits"] == 256

    @pytest.mark.asyncio
    async def test_general_data_uses_128_bit_key(self, store, backend):
        await store.put(make_record(classification=DataClassification.GENERAL))

        assert backend.get(RECORDS, "Patient/p1")["key_bits"] == 128

    @pytest.mark.asyncio
    async def test_put_overwrites_same_key_and_keeps_created_at(self, store, clock):
        first = await store.put(make_record())
        clock.advance(minutes=5)
        await store.put(make_record(payload={"resourceType": "Patient", "id": "p1", "active": False}))

        loaded = await store.get("Patient", "p1")

        assert loaded.payload == {"resourceType": "Patient", "id": "p1", "active": False}
        assert loaded.created_at == first.created_at
        assert loaded.updated_at == clock.now

    @pytest.mark.asyncio
    async def test_keys_are_namespaced_by_resource_type(self, store):
        await store.put(make_record())
        await store.put(
            StoredRecord(
                id="p1",
                resource_type="Observation",
                payload={"resourceType": "Observation", "id": "p1", "status": "final"},
            )
        )

        patient = await store.get("Patient", "p1")
        observation = await store.get("Observation", "p1")

        assert patient.payload["resourceType"] == "Patient"
        assert observation.payload["status"] == "final"


class TestExpiry:
    """Retention windows."""

    @pytest.mark.asyncio
    async def test_expiry_follows_classification_ttl(self, store, clock, settings):
        stored = await store.put(make_record(classification=DataClassification.PHI))

        assert (stored.expires_at - clock.now).total_seconds() == settings.phi_ttl_seconds

    @pytest.mark.asyncio
    async def test_expired_record_is_not_found_before_purge(self, store, backend, clock):
        await store.put(make_record())
        clock.advance(hours=24)

        with pytest.raises(NotFoundError):
            await store.get("Patient", "p1")
        # Still physically present until the purge runs
        assert backend.get(RECORDS, "Patient/p1") is not None

    @pytest.mark.asyncio
    async def test_record_readable_until_expiry(self, store, clock):
        await store.put(make_record(classification=DataClassification.SENSITIVE))
        clock.advance(days=6, hours=23)

        loaded = await store.get("Patient", "p1")

        assert loaded.id == "p1"

    @pytest.mark.asyncio
    @pytest.mark.audit_required
    async def test_purge_removes_only_expired_records(self, store, clock, audit_logger):
        await store.put(make_record("phi", classification=DataClassification.PHI))
        await store.put(make_record("general", classification=DataClassification.GENERAL))
        clock.advance(days=2)

        purged = await store.purge_expired()

        assert purged == 1
        assert await store.get_metadata("Patient", "phi") is None
        assert (await store.get("Patient", "general")).id == "general"
        entries = audit_logger.get_entries(action=AuditAction.DATA_PURGED)
        assert entries[-1].metadata == {"count": 1}

    @pytest.mark.asyncio
    async def test_purge_hook_runs_before_delete(self, store, clock):
        seen = []

        async def hook(row):
            seen.append((row.key, row.sync_status))

        store.add_purge_hook(DataClassification.PHI, hook)
        await store.put(make_record())
        clock.advance(days=1)

        await store.purge_expired()

        assert seen == [("Patient/p1", SyncStatus.PENDING)]

    @pytest.mark.asyncio
    async def test_failing_purge_hook_keeps_record(self, store, clock):
        def hook(row):
            raise RuntimeError("export failed")

        store.add_purge_hook(DataClassification.PHI, hook)
        await store.put(make_record())
        clock.advance(days=1)

        purged = await store.purge_expired()

        assert purged == 0
        assert await store.get_metadata("Patient", "p1") is not None

    @pytest.mark.asyncio
    async def test_purge_prunes_old_audit_entries(self, store, clock, audit_logger, settings):
        audit_logger.log(AuditAction.DATA_EXPORTED, "old export")
        clock.advance(days=settings.audit_retention_days + 1)

        await store.purge_expired()

        assert audit_logger.count(AuditAction.DATA_EXPORTED) == 0


class TestIntegrity:
    """Tampering and key loss fail closed."""

    @pytest.mark.asyncio
    @pytest.mark.hipaa_required
    async def test_tampered_ciphertext_raises_integrity_error(self, store, backend, audit_logger):
        await store.put(make_record())
        row = backend.get(RECORDS, "Patient/p1")
        ciphertext = row["ciphertext"]
        row["ciphertext"] = ciphertext[:-4] + ("AAAA" if ciphertext[-4:] != "AAAA" else "BBBB")
        backend.put(RECORDS, "Patient/p1", row)

        with pytest.raises(IntegrityError):
            await store.get("Patient", "p1")
        assert audit_logger.count(AuditAction.INTEGRITY_FAILURE) == 1

    @pytest.mark.asyncio
    async def test_checksum_mismatch_raises_integrity_error(self, store, backend):
        await store.put(make_record())
        row = backend.get(RECORDS, "Patient/p1")
        row["checksum"] = "0" * 64
        backend.put(RECORDS, "Patient/p1", row)

        with pytest.raises(IntegrityError):
            await store.get("Patient", "p1")

    @pytest.mark.asyncio
    async def test_ciphertext_moved_to_other_key_fails_authentication(self, store, backend):
        await store.put(make_record("p1"))
        await store.put(make_record("p2"))
        row_p1 = backend.get(RECORDS, "Patient/p1")
        row_p2 = backend.get(RECORDS, "Patient/p2")
        row_p2["ciphertext"] = row_p1["ciphertext"]
        row_p2["checksum"] = row_p1["checksum"]
        backend.put(RECORDS, "Patient/p2", row_p2)

        with pytest.raises(IntegrityError):
            await store.get("Patient", "p2")

    @pytest.mark.asyncio
    async def test_revoked_key_fails_closed(self, store, encryption):
        await store.put(make_record())
        encryption.revoke_key(DataClassification.PHI)

        with pytest.raises(EncryptionKeyUnavailableError):
            await store.get("Patient", "p1")
        with pytest.raises(EncryptionKeyUnavailableError):
            await store.put(make_record("p2"))

    @pytest.mark.asyncio
    async def test_revoking_one_classification_leaves_others_readable(self, store, encryption):
        await store.put(make_record("g", classification=DataClassification.GENERAL))
        encryption.revoke_key(DataClassification.PHI)

        loaded = await store.get("Patient", "g")

        assert loaded.id == "g"


class TestAccessControl:
    """Ownership checks."""

    @pytest.mark.asyncio
    @pytest.mark.hipaa_required
    async def test_other_user_is_denied(self, store, audit_logger):
        await store.put(make_record(), user_id="nurse-1")

        with pytest.raises(AccessDeniedError):
            await store.get("Patient", "p1", user_id="nurse-2")
        denied = audit_logger.get_entries(action=AuditAction.ACCESS_DENIED)
        assert denied[0].user_id == "nurse-2"
        assert denied[0].severity == AuditSeverity.WARNING

    @pytest.mark.asyncio
    async def test_owner_can_read(self, store):
        await store.put(make_record(), user_id="nurse-1")

        loaded = await store.get("Patient", "p1", user_id="nurse-1")

        assert loaded.id == "p1"

    @pytest.mark.asyncio
    async def test_delete_removes_access_metadata_and_is_idempotent(self, store, backend):
        await store.put(make_record(), user_id="nurse-1")

        assert await store.delete("Patient", "p1") is True
        assert await store.delete("Patient", "p1") is False
        assert backend.get(ACCESS_CONTROL, "Patient/p1") is None
        with pytest.raises(NotFoundError):
            await store.get("Patient", "p1")


class TestAudit:
    """Audit trail for PHI access."""

    @pytest.mark.asyncio
    @pytest.mark.audit_required
    @pytest.mark.phi_encryption
    async def test_put_then_get_emits_one_encrypt_and_one_decrypt(self, store, audit_logger):
        await store.put(make_record(classification=DataClassification.PHI))
        await store.get("Patient", "p1")

        assert audit_logger.count(AuditAction.DATA_ENCRYPTED) == 1
        assert audit_logger.count(AuditAction.DATA_DECRYPTED) == 1

    @pytest.mark.asyncio
    async def test_audit_metadata_never_contains_payload(self, store, audit_logger):
        await store.put(make_record())
        await store.get("Patient", "p1")

        assert "Okafor" not in audit_logger.export_json()

    @pytest.mark.asyncio
    async def test_get_bumps_last_accessed_at(self, store, clock):
        await store.put(make_record())
        clock.advance(minutes=3)

        await store.get("Patient", "p1")
        row = await store.get_metadata("Patient", "p1")

        assert row.last_accessed_at == clock.now


class TestSyncState:
    """Metadata-only transitions."""

    @pytest.mark.asyncio
    async def test_update_sync_state_keeps_ciphertext(self, store, backend):
        await store.put(make_record())
        before = backend.get(RECORDS, "Patient/p1")["ciphertext"]

        await store.update_sync_state(
            "Patient",
            "p1",
            sync_status=SyncStatus.SYNCED,
            local_version=1,
            remote_version=1,
            pending_operation=None,
        )

        after = backend.get(RECORDS, "Patient/p1")
        assert after["ciphertext"] == before
        assert after["sync_status"] == "synced"

    @pytest.mark.asyncio
    async def test_update_sync_state_rejects_invalid_combination(self, store):
        await store.put(make_record())

        with pytest.raises(ValueError):
            await store.update_sync_state("Patient", "p1", sync_status=SyncStatus.SYNCED)

    @pytest.mark.asyncio
    async def test_conflict_cannot_jump_to_synced(self, store):
        await store.put(make_record())
        await store.update_sync_state(
            "Patient", "p1", sync_status=SyncStatus.CONFLICT, conflict_id="c1"
        )

        with pytest.raises(InvalidTransitionError):
            await store.update_sync_state(
                "Patient",
                "p1",
                sync_status=SyncStatus.SYNCED,
                local_version=1,
                remote_version=1,
                pending_operation=None,
                conflict_id=None,
            )

    @pytest.mark.asyncio
    async def test_list_records_filters_without_decrypting(self, store, audit_logger):
        await store.put(make_record("a"))
        await store.put(make_record("b"))
        await store.update_sync_state(
            "Patient", "b", sync_status=SyncStatus.FAILED
        )

        failed = await store.list_records(sync_status=SyncStatus.FAILED)

        assert [r.id for r in failed] == ["b"]
        assert audit_logger.count(AuditAction.DATA_DECRYPTED) == 0


class TestConflicts:
    """Conflict persistence and resolution commits."""

    @staticmethod
    def make_conflict(**kwargs):
        data = dict(
            id="c1",
            resource_type="Patient",
            data_id="p1",
            classification=DataClassification.PHI,
            local_version=2,
            remote_version=3,
            conflict_type=ConflictType.UPDATE,
            local_payload={"resourceType": "Patient", "id": "p1", "gender": "female"},
            remote_payload={"resourceType": "Patient", "id": "p1", "gender": "unknown"},
        )
        data.update(kwargs)
        return SyncConflict(**data)

    @pytest.mark.asyncio
    async def test_conflicts_are_encrypted_and_listed(self, store, backend):
        await store.save_conflict(self.make_conflict())

        stored = backend.get("conflicts", "c1")
        listed = await store.list_conflicts(resolved=False)

        assert "female" not in json.dumps(stored)
        assert [c.id for c in listed] == ["c1"]
        assert listed[0].local_payload["gender"] == "female"

    @pytest.mark.asyncio
    async def test_missing_conflict_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.get_conflict("nope")

    @pytest.mark.asyncio
    @pytest.mark.audit_required
    async def test_commit_resolution_moves_record_out_of_conflict(self, store, audit_logger):
        await store.put(make_record())
        await store.update_sync_state(
            "Patient", "p1", sync_status=SyncStatus.CONFLICT, conflict_id="c1"
        )
        conflict = self.make_conflict()
        await store.save_conflict(conflict)
        resolved = conflict.model_copy(
            update={
                "resolved": True,
                "resolution": ConflictResolution(winner=ResolutionWinner.REMOTE),
                "resolved_by": "dr-lee",
            }
        )

        await store.commit_resolution(
            resolved,
            record=StoredRecord(
                id="p1",
                resource_type="Patient",
                payload=conflict.remote_payload,
                classification=DataClassification.PHI,
                local_version=3,
                remote_version=3,
                sync_status=SyncStatus.SYNCED,
                pending_operation=None,
            ),
        )

        loaded = await store.get("Patient", "p1")
        assert loaded.sync_status == SyncStatus.SYNCED
        assert loaded.payload["gender"] == "unknown"
        assert (await store.get_conflict("c1")).resolved is True
        entry = audit_logger.get_entries(action=AuditAction.CONFLICT_RESOLVED)[0]
        assert entry.user_id == "dr-lee"

    @pytest.mark.asyncio
    async def test_commit_requires_resolved_conflict(self, store):
        with pytest.raises(InvalidTransitionError):
            await store.commit_resolution(self.make_conflict())


class TestSnapshot:
    """Export/import."""

    @pytest.mark.asyncio
    @pytest.mark.audit_required
    async def test_export_import_round_trip(
        self, store, encryption, audit_logger, settings, clock
    ):
        await store.put(make_record("a"))
        await store.put(make_record("b"), user_id="nurse-1")
        await store.set_meta("last_sync_at", "2024-01-01T00:00:00+00:00")
        snapshot = await store.export_all()

        from omnicare_sync.sync.backends import InMemoryStorageBackend

        other = SecureLocalStore(
            InMemoryStorageBackend(), encryption, audit_logger, settings=settings, clock=clock
        )
        count = await other.import_all(snapshot)

        assert count == 2
        assert (await other.get("Patient", "a")).payload == make_record("a").payload
        assert await other.get_meta("last_sync_at") == "2024-01-01T00:00:00+00:00"
        with pytest.raises(AccessDeniedError):
            await other.get("Patient", "b", user_id="nurse-2")
        assert audit_logger.count(AuditAction.DATA_EXPORTED) == 1
        assert audit_logger.count(AuditAction.DATA_IMPORTED) == 1

    @pytest.mark.asyncio
    async def test_import_is_all_or_nothing(self, store):
        await store.put(make_record("keep"))
        snapshot = await store.export_all()
        snapshot["data"]["records"]["Patient/keep"]["checksum"] = "f" * 64
        await store.put(make_record("existing"))

        with pytest.raises(IntegrityError):
            await store.import_all(snapshot)

        # Nothing was replaced
        assert (await store.get("Patient", "existing")).id == "existing"

    @pytest.mark.asyncio
    async def test_import_rejects_unknown_format(self, store):
        with pytest.raises(IntegrityError):
            await store.import_all({"format_version": 99, "data": {}})


class TestMaintenance:
    """Stats and emergency wipe."""

    @pytest.mark.asyncio
    async def test_storage_stats(self, store):
        await store.put(make_record("a", classification=DataClassification.PHI))
        await store.put(make_record("b", classification=DataClassification.GENERAL))

        stats = await store.get_storage_stats()

        assert stats["total_items"] == 2
        assert stats["by_classification"] == {"phi": 1, "general": 1}
        assert stats["by_sync_status"] == {"pending": 2}
        assert stats["total_size"] > 0

    @pytest.mark.asyncio
    @pytest.mark.audit_required
    async def test_clear_all(self, store, audit_logger):
        await store.put(make_record())

        await store.clear_all()

        assert await store.list_records() == []
        entry = audit_logger.get_entries(action=AuditAction.DATA_CLEARED)[0]
        assert entry.severity == AuditSeverity.WARNING

    @pytest.mark.asyncio
    async def test_pending_delete_record_round_trips(self, store):
        record = make_record(pending_operation=SyncOperation.DELETE)

        await store.put(record)

        assert (await store.get("Patient", "p1")).pending_operation == SyncOperation.DELETE
