"""
Unit tests for ArchiveRepository.

Tests cover:
- Loading with id checks and legacy rejection
- Conditional updates
- Conflict handling: reload and re-apply
- Retry exhaustion and error mapping
"""

import json

import pytest

from backend.changeflow.errors import ArchiveUpdateError, LegacyObjectError, ValidationError
from backend.changeflow.keys import KeyLayout
from backend.changeflow.model import ModificationEntry, ModificationType, SYSTEM_ACTOR
from backend.changeflow.store import (
    ArchiveRepository,
    InMemoryObjectStore,
    ObjectNotFoundError,
    StoreAccessDeniedError,
    StoreError,
)
from tests.factories import change_doc, entry

KEY = "archive/CHG-1001.json"


def processed(tenant_code="acme"):
    return ModificationEntry.now(SYSTEM_ACTOR, ModificationType.PROCESSED, tenant_code=tenant_code)


class TestArchiveRepository:
    """Tests for ArchiveRepository."""

    @pytest.fixture
    def store(self):
        store = InMemoryObjectStore("changes")
        store.put_json_nowait(KEY, change_doc(status="approved"))
        return store

    @pytest.fixture
    def repo(self, store):
        return ArchiveRepository(store, KeyLayout(), max_attempts=3, base_delay=0.001, max_delay=0.002)

    @pytest.mark.asyncio
    async def test_load(self, repo):
        """Loading returns the object and the etag it was read at."""
        snapshot = await repo.load("CHG-1001")
        assert snapshot.obj.object_id == "CHG-1001"
        assert snapshot.etag.startswith('"')

    @pytest.mark.asyncio
    async def test_load_missing(self, repo):
        """A missing archive object is a (retryable) not-found error."""
        with pytest.raises(ObjectNotFoundError) as exc_info:
            await repo.load("CHG-404")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_load_legacy(self, store, repo):
        """Legacy objects are rejected on load."""
        store.put_json_nowait(KEY, change_doc(metadata={"status": "approved"}))
        with pytest.raises(LegacyObjectError):
            await repo.load("CHG-1001")

    @pytest.mark.asyncio
    async def test_load_id_mismatch(self, store, repo):
        """The archive key and the object id must agree."""
        store.put_json_nowait(KEY, change_doc(object_id="CHG-9"))
        with pytest.raises(ValidationError):
            await repo.load("CHG-1001")

    @pytest.mark.asyncio
    async def test_load_malformed_names_object(self, store, repo):
        """Undecodable archive bodies are reported against the object id."""
        store.put_json_nowait(KEY, "not an object")
        with pytest.raises(ValidationError) as exc_info:
            await repo.load("CHG-1001")
        assert exc_info.value.object_id == "CHG-1001"

    @pytest.mark.asyncio
    async def test_update(self, store, repo):
        """A clean update writes the modified snapshot once."""
        snapshot = await repo.load("CHG-1001")
        snapshot.obj.modifications.append(processed())

        written = await repo.update(snapshot, lambda obj: pytest.fail("no replay expected"))

        data = store.read_json(KEY)
        assert data["modifications"][-1]["modification_type"] == "processed"
        assert written.etag != snapshot.etag
        assert repo.conflicts == 0

    @pytest.mark.asyncio
    async def test_conflict_reapplies_on_fresh_copy(self, store, repo):
        """A concurrent write is preserved and our entry is re-applied."""
        snapshot = await repo.load("CHG-1001")
        ours = processed("acme")
        snapshot.obj.modifications.append(ours)

        concurrent = change_doc(status="approved")
        concurrent["modifications"].append(entry("processed", 5, actor_id=SYSTEM_ACTOR, tenant_code="globex"))
        await store.put(KEY, json.dumps(concurrent).encode())

        written = await repo.update(snapshot, lambda obj: obj.modifications.append(ours))

        types = [(m["modification_type"], m.get("tenant_code")) for m in store.read_json(KEY)["modifications"]]
        assert types[-2:] == [("processed", "globex"), ("processed", "acme")]
        assert repo.conflicts == 1
        assert written.conflicts == 1

    @pytest.mark.asyncio
    async def test_conflicts_exhaust_retries(self, store, repo):
        """Persistent conflicts raise a retryable ArchiveUpdateError."""
        snapshot = await repo.load("CHG-1001")

        def apply(obj):
            store.put_json_nowait(KEY, change_doc(status="approved"))

        store.put_json_nowait(KEY, change_doc(status="approved"))
        with pytest.raises(ArchiveUpdateError) as exc_info:
            await repo.update(snapshot, apply)

        assert exc_info.value.retryable
        assert repo.conflicts == 3

    @pytest.mark.asyncio
    async def test_transient_write_failure(self, store, repo):
        """A transient store failure becomes ArchiveUpdateError."""
        snapshot = await repo.load("CHG-1001")
        store.fail_next("put", StoreError("503 Slow Down"))

        with pytest.raises(ArchiveUpdateError):
            await repo.update(snapshot, lambda obj: None)

    @pytest.mark.asyncio
    async def test_access_denied_is_not_wrapped(self, store, repo):
        """Non-retryable store failures keep their type."""
        snapshot = await repo.load("CHG-1001")
        store.fail_next("put", StoreAccessDeniedError("denied"))

        with pytest.raises(StoreAccessDeniedError):
            await repo.update(snapshot, lambda obj: None)
