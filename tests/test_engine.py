from __future__ import annotations

import json

import httpx
import pytest

from timecheck_sync.credentials import StaticCredentialProvider
from timecheck_sync.engine import SyncEngine, build_changes
from timecheck_sync.errors import AuthorizationError, ConnectivityError, ProtocolError, TombstonedRecordError
from timecheck_sync.models import OutboxRecord
from timecheck_sync.recorder import MutationRecorder
from timecheck_sync.schemas import TaskPayload, TimeEntryPayload
from timecheck_sync.store import LocalStore

from .conftest import OWNER, TOKEN, mock_remote
from .fakes import RecordingHandler, sync_response, task_json


def _snapshot(store, owner: str = OWNER) -> dict:
    return {
        "tasks": [
            TaskPayload.model_validate(t).model_dump()
            for t in store.list_tasks(owner, include_deleted=True)
        ],
        "time_entries": [
            TimeEntryPayload.model_validate(e).model_dump()
            for e in store.list_entries(owner, include_deleted=True)
        ],
        "outbox": [(row.id, row.table, row.record_id, row.op, row.payload) for row in store.pending_outbox(owner)],
        "cursor": store.get_cursor(owner),
    }


@pytest.mark.asyncio
async def test_sync_pushes_outbox_and_applies_authoritative_snapshot(
    store, recorder, clock, engine, authority
) -> None:
    task = recorder.create_task("Write spec")
    entry = recorder.start_timer(task.id)
    clock.advance(10)
    recorder.stop_timer(task.id)

    cursor = await engine.sync(OWNER)

    assert cursor == "2030-01-01T00:00:01"
    assert store.get_cursor(OWNER) == cursor
    assert store.outbox_count(OWNER) == 0

    server_task = TaskPayload.model_validate(authority.tasks[task.id])
    server_entry = TimeEntryPayload.model_validate(authority.time_entries[entry.id])
    assert TaskPayload.model_validate(store.get_task(task.id)) == server_task
    assert TimeEntryPayload.model_validate(store.get_entry(entry.id)) == server_entry
    assert (server_entry.stopped_at - server_entry.started_at).total_seconds() == 10


@pytest.mark.asyncio
async def test_request_carries_cursor_batches_in_log_order_and_bearer(store, recorder, clock) -> None:
    handler = RecordingHandler({"/sync": sync_response("2030-01-01T00:00:05")})
    engine = SyncEngine(store, mock_remote(handler), StaticCredentialProvider(TOKEN))

    first = recorder.create_task("First")
    clock.advance(1)
    recorder.update_task(first.id, title="First, renamed")
    clock.advance(1)
    recorder.start_timer(first.id)

    await engine.sync(OWNER)
    recorder.create_task("Second")
    await engine.sync(OWNER)

    first_body = json.loads(handler.requests[0].content)
    assert handler.requests[0].headers["Authorization"] == f"Bearer {TOKEN}"
    assert first_body["last_sync_at"] is None
    assert [c["data"]["title"] for c in first_body["changes"]["tasks"]] == ["First", "First, renamed"]
    assert [c["op"] for c in first_body["changes"]["time_entries"]] == ["upsert"]

    second_body = json.loads(handler.requests[1].content)
    assert second_body["last_sync_at"] == "2030-01-01T00:00:05"
    assert [c["data"]["title"] for c in second_body["changes"]["tasks"]] == ["Second"]
    assert second_body["changes"]["time_entries"] == []


@pytest.mark.asyncio
async def test_missing_credential_fails_without_contacting_authority(store, recorder) -> None:
    handler = RecordingHandler({"/sync": sync_response()})
    engine = SyncEngine(store, mock_remote(handler), StaticCredentialProvider(None))
    recorder.create_task("Write spec")
    before = _snapshot(store)

    with pytest.raises(AuthorizationError):
        await engine.sync(OWNER)

    assert handler.requests == []
    assert _snapshot(store) == before


@pytest.mark.asyncio
async def test_rejected_credential_is_an_authorization_failure(store, recorder, remote) -> None:
    engine = SyncEngine(store, remote, StaticCredentialProvider("wrong"))
    recorder.create_task("Write spec")
    before = _snapshot(store)

    with pytest.raises(AuthorizationError):
        await engine.sync(OWNER)

    assert _snapshot(store) == before


def _raise_connect_error(request: httpx.Request):
    raise httpx.ConnectError("connection refused", request=request)


def _raise_read_timeout(request: httpx.Request):
    raise httpx.ReadTimeout("no response", request=request)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("factory", "error"),
    [
        (_raise_connect_error, ConnectivityError),
        (_raise_read_timeout, ConnectivityError),
        (lambda r: httpx.Response(500, text="database is down"), ProtocolError),
        (lambda r: httpx.Response(422, json={"detail": "bad payload"}), ProtocolError),
        (lambda r: httpx.Response(200, text="<html>captive portal</html>"), ProtocolError),
        (lambda r: httpx.Response(200, json={"tasks": [], "time_entries": []}), ProtocolError),
        (
            lambda r: httpx.Response(
                200,
                json={"server_time": "2030-01-01T00:00:01", "tasks": [{"id": "x"}], "time_entries": []},
            ),
            ProtocolError,
        ),
    ],
)
async def test_failed_sync_leaves_local_state_unchanged(store, recorder, clock, factory, error) -> None:
    engine = SyncEngine(store, mock_remote(RecordingHandler({"/sync": factory})), StaticCredentialProvider(TOKEN))
    task = recorder.create_task("Write spec")
    recorder.start_timer(task.id)
    before = _snapshot(store)

    with pytest.raises(error):
        await engine.sync(OWNER)

    assert _snapshot(store) == before


@pytest.mark.asyncio
async def test_protocol_error_keeps_server_detail(store, recorder) -> None:
    handler = RecordingHandler({"/sync": lambda r: httpx.Response(422, json={"detail": "bad payload"})})
    engine = SyncEngine(store, mock_remote(handler), StaticCredentialProvider(TOKEN))

    with pytest.raises(ProtocolError) as excinfo:
        await engine.sync(OWNER)

    assert excinfo.value.status_code == 422
    assert excinfo.value.detail == "bad payload"


@pytest.mark.asyncio
async def test_rows_queued_during_the_call_survive(store, recorder, clock) -> None:
    recorder.create_task("Before the call")
    late = {}

    async def respond_after_local_edit(_request: httpx.Request) -> httpx.Response:
        clock.advance(1)
        late["task"] = recorder.create_task("During the call")
        return sync_response("2030-01-01T00:00:02")(_request)

    handler = RecordingHandler({"/sync": respond_after_local_edit})
    engine = SyncEngine(store, mock_remote(handler), StaticCredentialProvider(TOKEN))

    await engine.sync(OWNER)

    remaining = store.pending_outbox(OWNER)
    assert [row.record_id for row in remaining] == [late["task"].id]
    assert store.get_cursor(OWNER) == "2030-01-01T00:00:02"


def _echo_after(edit, server_time: str = "2030-01-01T00:00:02"):
    """
    /sync handler that runs ``edit`` once while the request is in flight and
    answers with the records exactly as they were pushed.
    """
    pending = [edit]

    async def respond(request: httpx.Request) -> httpx.Response:
        if pending:
            pending.pop()()
        changes = json.loads(request.content)["changes"]
        return sync_response(
            server_time,
            tasks=[change["data"] for change in changes["tasks"]],
            time_entries=[change["data"] for change in changes["time_entries"]],
        )(request)

    return respond


@pytest.mark.asyncio
async def test_update_during_the_call_is_not_overwritten(store, recorder, clock) -> None:
    task = recorder.create_task("Before the call")

    def rename() -> None:
        clock.advance(1)
        recorder.update_task(task.id, title="During the call")

    handler = RecordingHandler({"/sync": _echo_after(rename)})
    engine = SyncEngine(store, mock_remote(handler), StaticCredentialProvider(TOKEN))

    await engine.sync(OWNER)

    stored = store.get_task(task.id)
    assert stored.title == "During the call"
    assert stored.client_updated_at == clock()
    remaining = store.pending_outbox(OWNER)
    assert [(row.record_id, row.payload["title"]) for row in remaining] == [(task.id, "During the call")]
    assert store.get_cursor(OWNER) == "2030-01-01T00:00:02"

    await engine.sync(OWNER)

    assert store.get_task(task.id).title == "During the call"
    assert store.outbox_count(OWNER) == 0


@pytest.mark.asyncio
async def test_delete_during_the_call_stays_tombstoned(store, recorder, clock) -> None:
    task = recorder.create_task("Before the call")

    def delete() -> None:
        clock.advance(1)
        recorder.delete_task(task.id)

    handler = RecordingHandler({"/sync": _echo_after(delete)})
    engine = SyncEngine(store, mock_remote(handler), StaticCredentialProvider(TOKEN))

    await engine.sync(OWNER)

    stored = store.get_task(task.id)
    assert stored.deleted_at == clock()
    assert stored.client_updated_at == clock()
    assert store.list_tasks(OWNER) == []
    remaining = store.pending_outbox(OWNER)
    assert [(row.record_id, row.op) for row in remaining] == [(task.id, "delete")]
    assert store.get_cursor(OWNER) == "2030-01-01T00:00:02"
    with pytest.raises(TombstonedRecordError):
        recorder.update_task(task.id, title="Back again")

    await engine.sync(OWNER)

    assert store.get_task(task.id).deleted_at == clock()
    assert store.outbox_count(OWNER) == 0


@pytest.mark.asyncio
async def test_timer_stopped_during_the_call_stays_stopped(store, recorder, clock) -> None:
    task = recorder.create_task("Write spec")
    entry = recorder.start_timer(task.id)

    def stop() -> None:
        clock.advance(30)
        recorder.stop_timer(task.id)

    handler = RecordingHandler({"/sync": _echo_after(stop)})
    engine = SyncEngine(store, mock_remote(handler), StaticCredentialProvider(TOKEN))

    await engine.sync(OWNER)

    stored = store.get_entry(entry.id)
    assert stored.stopped_at == clock()
    assert stored.client_updated_at == clock()
    assert store.running_entries(OWNER) == []
    remaining = store.pending_outbox(OWNER)
    assert [(row.table, row.record_id) for row in remaining] == [("time_entries", entry.id)]
    assert remaining[0].payload["stopped_at"] is not None
    assert store.get_cursor(OWNER) == "2030-01-01T00:00:02"


@pytest.mark.asyncio
async def test_server_copy_wins_unconditionally(store, recorder, clock) -> None:
    task = recorder.create_task("Local title")
    stored = store.get_task(task.id)
    server_version = task_json(
        task.id,
        title="Server title",
        created_at=stored.created_at.isoformat(),
        updated_at="2030-01-01T00:00:01",
        client_updated_at="2020-01-01T00:00:00Z",
    )
    handler = RecordingHandler({"/sync": sync_response(tasks=[server_version])})
    engine = SyncEngine(store, mock_remote(handler), StaticCredentialProvider(TOKEN))

    await engine.sync(OWNER)

    after = store.get_task(task.id)
    assert after.title == "Server title"
    assert after.client_updated_at.isoformat() == "2020-01-01T00:00:00"
    assert after.owner == OWNER


@pytest.mark.asyncio
async def test_create_then_delete_offline_ends_tombstoned(store, recorder, clock, engine, authority) -> None:
    task = recorder.create_task("Write spec")
    clock.advance(1)
    recorder.delete_task(task.id)

    await engine.sync(OWNER)

    stored = store.get_task(task.id)
    assert stored.deleted_at is not None
    assert stored.deleted_at == authority.tasks[task.id]["deleted_at"]
    assert store.list_tasks(OWNER) == []
    assert store.outbox_count(OWNER) == 0


@pytest.mark.asyncio
async def test_sync_pulls_changes_from_other_sources(tmp_path, store, engine) -> None:
    laptop_store = LocalStore(f"sqlite:///{tmp_path / 'laptop.db'}")
    laptop = SyncEngine(laptop_store, engine.remote, StaticCredentialProvider(TOKEN))
    try:
        elsewhere = MutationRecorder(laptop_store, OWNER).create_task("From laptop")
        await laptop.sync(OWNER)

        await engine.sync(OWNER)
    finally:
        laptop_store.close()

    assert [t.title for t in store.list_tasks(OWNER)] == ["From laptop"]
    assert store.get_task(elsewhere.id).owner == OWNER


@pytest.mark.asyncio
async def test_replaying_the_same_batch_yields_the_same_state(store, recorder, clock) -> None:
    task = recorder.create_task("Write spec")
    recorder.start_timer(task.id)
    pushed = [
        (row.table, row.record_id, row.op, row.payload, row.client_updated_at)
        for row in store.pending_outbox(OWNER)
    ]
    response = sync_response(
        "2030-01-01T00:00:01",
        tasks=[payload for table, _, _, payload, _ in pushed if table == "tasks"],
        time_entries=[payload for table, _, _, payload, _ in pushed if table == "time_entries"],
    )
    engine = SyncEngine(store, mock_remote(RecordingHandler({"/sync": response})), StaticCredentialProvider(TOKEN))

    await engine.sync(OWNER)
    first = _snapshot(store)

    with store.transaction() as session:
        store.set_cursor(session, OWNER, None)
        for table, record_id, op, payload, stamp in pushed:
            session.add(
                OutboxRecord(
                    table=table,
                    record_id=record_id,
                    op=op,
                    payload=payload,
                    owner=OWNER,
                    client_updated_at=stamp,
                )
            )
    await engine.sync(OWNER)

    assert _snapshot(store) == first


@pytest.mark.asyncio
async def test_redelivered_batch_is_a_no_op_on_the_authority(store, recorder, engine, authority) -> None:
    task = recorder.create_task("Write spec")
    request = engine.preview(OWNER)

    await engine.sync(OWNER)
    applied = dict(authority.tasks[task.id])

    # The client never saw the answer and sends the same batch again.
    await engine.remote.push_pull(request, TOKEN)

    assert authority.tasks[task.id] == applied


@pytest.mark.asyncio
async def test_owners_are_isolated(store, recorder, engine) -> None:
    MutationRecorder(store, "other@example.com").create_task("Not mine")
    recorder.create_task("Mine")

    await engine.sync(OWNER)

    assert store.outbox_count(OWNER) == 0
    assert store.outbox_count("other@example.com") == 1
    assert store.get_cursor("other@example.com") is None


def test_build_changes_keeps_every_row_in_order(store, recorder, clock) -> None:
    task = recorder.create_task("v1")
    clock.advance(1)
    recorder.update_task(task.id, title="v2")
    clock.advance(1)
    recorder.delete_task(task.id)

    changes = build_changes(store.pending_outbox(OWNER))

    assert [(c.op, c.data.title) for c in changes.tasks] == [
        ("upsert", "v1"),
        ("upsert", "v2"),
        ("delete", "v2"),
    ]
    assert changes.time_entries == []
