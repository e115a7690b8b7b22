"""Unit tests for the versioned flow stores (memory and SQLite)."""

from datetime import datetime, timezone

import pytest

from mes_system.domain import (
    BatchFlow,
    FlowType,
    SkuDraft,
    SkuFlow,
    SkuState,
)
from mes_system.exceptions import RecordNotFoundError, VersionConflictError
from mes_system.store import FlowStore, SQLiteFlowStore, summarize

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield FlowStore()
        return
    store = SQLiteFlowStore(str(tmp_path / "flows.sqlite3"))
    yield store
    store.close()


def _sku(instance_id: str = "SKU-1") -> SkuFlow:
    return SkuFlow(
        instance_id=instance_id,
        created_at=NOW,
        updated_at=NOW,
        draft=SkuDraft(sku_code="SKU-A", sku_name="Pack A", cells_per_module=12),
    )


def test_add_sets_revision_and_bumps_version(any_store) -> None:
    version = any_store.version
    stored = any_store.add(_sku())
    assert stored.revision == 1
    assert any_store.version == version + 1
    assert "SKU-1" in any_store
    assert len(any_store) == 1


def test_returned_instances_are_copies(any_store) -> None:
    """Mutating a read result never changes the stored instance."""
    any_store.add(_sku())
    fetched = any_store.get("SKU-1")
    fetched.state = SkuState.ACTIVE
    fetched.draft.sku_name = "changed"
    again = any_store.get("SKU-1")
    assert again.state == SkuState.DRAFT
    assert again.draft.sku_name == "Pack A"


def test_stale_write_is_rejected(any_store) -> None:
    any_store.add(_sku())
    first = any_store.get("SKU-1")
    second = any_store.get("SKU-1")
    first.state = SkuState.REVIEW
    any_store.upsert(first, expected_revision=first.revision)
    second.state = SkuState.OBSOLETE
    with pytest.raises(VersionConflictError):
        any_store.upsert(second, expected_revision=second.revision)
    assert any_store.get("SKU-1").state == SkuState.REVIEW


def test_changed_read_set_is_rejected(any_store) -> None:
    sku = any_store.add(_sku())
    batch = any_store.add(BatchFlow(instance_id="BATCH-1", created_at=NOW, updated_at=NOW))
    changed = any_store.get("SKU-1")
    any_store.upsert(changed, expected_revision=changed.revision)
    with pytest.raises(VersionConflictError, match="SKU-1"):
        any_store.upsert(
            batch, expected_revision=batch.revision, read_set={"SKU-1": sku.revision}
        )


def test_add_refuses_taken_id(any_store) -> None:
    any_store.add(_sku())
    with pytest.raises(VersionConflictError):
        any_store.add(_sku())
    with pytest.raises(VersionConflictError):
        any_store.add(BatchFlow(instance_id="SKU-1", created_at=NOW, updated_at=NOW))


def test_list_filters_by_flow_type(any_store) -> None:
    any_store.add(_sku())
    any_store.add(BatchFlow(instance_id="BATCH-1", created_at=NOW, updated_at=NOW))
    assert [flow.instance_id for flow in any_store.list(FlowType.BATCH)] == ["BATCH-1"]
    assert len(any_store.list()) == 2
    assert summarize(any_store)["counts"]["sku"] == 1


def test_delete_and_missing_ids(any_store) -> None:
    any_store.add(_sku())
    any_store.delete("SKU-1")
    assert any_store.find("SKU-1") is None
    with pytest.raises(RecordNotFoundError):
        any_store.get("SKU-1")
    with pytest.raises(RecordNotFoundError):
        any_store.delete("SKU-1")


def test_reset_clears_everything(any_store) -> None:
    any_store.add(_sku())
    any_store.reset()
    assert len(any_store) == 0
    assert any_store.version == 1


def test_sqlite_store_survives_reopen(tmp_path) -> None:
    path = str(tmp_path / "flows.sqlite3")
    with SQLiteFlowStore(path) as store:
        store.add(_sku())
    with SQLiteFlowStore(path) as reopened:
        assert reopened.get("SKU-1").draft.sku_code == "SKU-A"
        assert reopened.version == 2
