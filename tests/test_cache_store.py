import json

import pytest

from core.cache_store import (FALLBACK_SNAPSHOT, FALLBACK_WARNING, CacheStore, FallbackDataSource,
                              RemoteDataSource, setup_warnings)
from core.models import ClassGroup, Snapshot, User
from utils.error_handler import ApplicationError, EmptyDataSourceError, TransportError


@pytest.mark.asyncio
async def test_reload_fetches_all_four_collections(gateway, snapshot):
    store = CacheStore(RemoteDataSource(gateway), state_file=None)
    result = await store.reload_all()

    assert sorted(gateway.actions()) == ["assign.list", "classes.list", "submit.list", "teachers.list"]
    assert result == snapshot
    assert store.get_snapshot() is result
    assert store.notice is None


@pytest.mark.asyncio
async def test_empty_sheet_becomes_empty_collection(gateway):
    async def empty_submissions(assignment_id=None):
        raise EmptyDataSourceError("Số hàng trong dải ô phải tối thiểu là 1")

    gateway.list_submissions = empty_submissions
    store = CacheStore(RemoteDataSource(gateway), state_file=None)
    result = await store.reload_all()

    assert result.submissions == []
    assert len(result.classes) == 2


@pytest.mark.asyncio
async def test_failed_reload_keeps_previous_snapshot(store, gateway):
    before = store.get_snapshot()
    gateway.fail_with = TransportError("Could not connect to the server")

    with pytest.raises(TransportError):
        await store.reload_all()

    assert store.get_snapshot() is before
    assert store.notice.is_critical
    assert "Could not connect" in store.notice.message


@pytest.mark.asyncio
async def test_other_application_errors_are_not_swallowed(store, gateway):
    gateway.fail_with = ApplicationError("Sheet 'Classes' not found")
    with pytest.raises(ApplicationError):
        await store.reload_all()


@pytest.mark.asyncio
async def test_setup_warning_for_empty_classes_and_teachers(gateway):
    gateway.snapshot = Snapshot()
    store = CacheStore(RemoteDataSource(gateway), state_file=None)
    await store.reload_all()

    assert store.notice is not None
    assert not store.notice.is_critical
    assert "'Classes'" in store.notice.message
    assert "'Teachers'" in store.notice.message

    store.dismiss_notice()
    assert store.notice is None


def test_setup_warnings_silent_when_configured(snapshot):
    assert setup_warnings(snapshot) is None


def test_critical_notice_is_not_dismissible(store):
    from core.cache_store import StoreNotice

    store.notice = StoreNotice("critical", "down")
    store.dismiss_notice()
    assert store.notice is not None


@pytest.mark.asyncio
async def test_fallback_is_opt_in_and_isolated(store):
    await store.load_fallback()

    assert store.get_snapshot() == FALLBACK_SNAPSHOT
    assert store.notice.message == FALLBACK_WARNING

    store.get_snapshot().classes.append(ClassGroup(id="c9", name="Scratch"))
    assert len(FALLBACK_SNAPSHOT.classes) == 2


@pytest.mark.asyncio
async def test_fallback_source_can_be_swapped(store):
    custom = Snapshot(classes=[ClassGroup(id="x", name="Only")])
    await store.load_fallback(FallbackDataSource(custom))
    assert [c.id for c in store.get_snapshot().classes] == ["x"]


@pytest.mark.asyncio
async def test_state_survives_restart(tmp_path, gateway, snapshot):
    state_file = tmp_path / "state.json"
    store = CacheStore(RemoteDataSource(gateway), state_file=str(state_file))
    await store.reload_all()
    store.save_user(User(username="admin", role="admin", name="Admin"))

    restored = CacheStore(RemoteDataSource(gateway), state_file=str(state_file))
    assert restored.get_snapshot() == snapshot
    assert restored.current_user().username == "admin"

    restored.clear_user()
    assert json.loads(state_file.read_text(encoding="utf-8"))["user"] is None


def test_unreadable_state_file_is_ignored(tmp_path, gateway):
    state_file = tmp_path / "state.json"
    state_file.write_text("{broken", encoding="utf-8")
    store = CacheStore(RemoteDataSource(gateway), state_file=str(state_file))
    assert store.get_snapshot() == Snapshot()
    assert store.current_user() is None
