"""Tests for the task creation / status update workflow."""

from __future__ import annotations

import asyncio
import itertools
import threading
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from app.services.slack import SlackAPIError, SlackMessageResponse, SlackTimeoutError
from app.services.taskbridge.background import BackgroundRunner
from app.services.taskbridge.errors import (
    InvalidInteractionError,
    TaskBridgeError,
    TaskResolutionError,
    UpstreamTimeoutError,
    UpstreamWriteError,
)
from app.services.taskbridge.models import MessageRef, Task, TaskDetails
from app.services.taskbridge.orchestrator import TaskWorkflowOrchestrator
from app.services.taskbridge.runtime_deps import WorkflowConfig
from app.services.taskbridge.task_store import InMemoryTaskStore, ResilientTaskStore, TaskStoreUnavailableError
from app.services.wrike import (
    WrikeConnectionError,
    WrikeForbiddenError,
    WrikeNotFoundError,
    WrikeService,
    WrikeTask,
    WrikeTimeoutError,
    WrikeValidationError,
    parse_display_id,
)

PERMALINK = "https://www.wrike.com/open.htm?id=4242"


def _slack():
    slack = AsyncMock()
    counter = itertools.count(1)

    def post_message(*, channel, text, blocks=None):
        return SlackMessageResponse(ok=True, ts=f"{next(counter)}.000", channel=channel)

    slack.post_message.side_effect = post_message
    slack.update_message.return_value = SlackMessageResponse(ok=True)
    slack.get_user_display_name.return_value = "Jane Doe"
    return slack


def _wrike():
    wrike = AsyncMock()
    wrike.test_connection.return_value = {"id": "ACC"}
    wrike.create_task_in_folder.return_value = WrikeTask(id="IEAAA", permalink=PERMALINK)
    wrike.set_task_dates.return_value = {}
    wrike.update_task.return_value = {"data": []}
    wrike.find_task_by_permalink.return_value = None
    wrike.list_recent_tasks.return_value = []
    return wrike


def _orchestrator(*, slack=None, wrike=None, store=None, config=None, error_sink=None, orphan_db=None):
    return TaskWorkflowOrchestrator(
        slack=slack if slack is not None else _slack(),
        wrike=wrike if wrike is not None else _wrike(),
        store=store if store is not None else InMemoryTaskStore(),
        runner=BackgroundRunner(),
        config=config or WorkflowConfig(default_folder_id="F1"),
        error_sink=error_sink,
        orphan_db=orphan_db,
    )


def _posted_channels(slack) -> list[str]:
    return [call.kwargs["channel"] for call in slack.post_message.call_args_list]


# ---------------------------------------------------------------------------
# createTask
# ---------------------------------------------------------------------------


class TestCreateTask:
    @pytest.mark.asyncio
    async def test_no_dates_means_no_date_call(self):
        store = InMemoryTaskStore()
        orch = _orchestrator(store=store)

        created = await orch.create_task(TaskDetails(title="Ship it"), "U_REQ", "C123")
        await orch.runner.drain()

        assert created.task_id == "4242"
        assert created.wrike_id == "IEAAA"
        assert parse_display_id(created.task_url) == created.task_id
        orch.wrike.set_task_dates.assert_not_awaited()

        record = await store.get_task("4242")
        assert record is not None
        assert record.status == "New"
        assert record.requested_by == "U_REQ"
        assert record.channel_message == MessageRef(channel="C123", timestamp=record.channel_message.timestamp)
        assert record.user_message is not None
        assert record.assignee_message is None

    @pytest.mark.asyncio
    async def test_both_dates_set_once(self):
        orch = _orchestrator()
        details = TaskDetails(title="Ship it", start_date="2025-01-10", due_date="2025-01-17")

        await orch.create_task(details, "U_REQ", "C123")
        await orch.runner.drain()

        orch.wrike.set_task_dates.assert_awaited_once_with("IEAAA", "2025-01-10", "2025-01-17")

    @pytest.mark.asyncio
    async def test_single_date_is_not_written(self):
        orch = _orchestrator()

        await orch.create_task(TaskDetails(title="Ship it", due_date="2025-01-17"), "U_REQ", "C123")
        await orch.runner.drain()

        orch.wrike.set_task_dates.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_blank_title_defaults(self):
        orch = _orchestrator()

        await orch.create_task(TaskDetails(title="   "), "U_REQ", "C123")
        await orch.runner.drain()

        folder_id, payload = orch.wrike.create_task_in_folder.await_args.args
        assert folder_id == "F1"
        assert payload["title"] == "Untitled Task"

    @pytest.mark.asyncio
    async def test_date_failure_is_not_fatal(self):
        wrike = _wrike()
        wrike.set_task_dates.side_effect = WrikeValidationError("bad dates", status_code=400, detail="bad dates")
        error_sink = MagicMock()
        orch = _orchestrator(wrike=wrike, error_sink=error_sink)

        created = await orch.create_task(
            TaskDetails(title="Ship it", start_date="2025-01-17", due_date="2025-01-10"),
            "U_REQ",
            "C123",
        )
        await orch.runner.drain()

        assert created.task_id == "4242"
        operations = [call.kwargs["operation"] for call in error_sink.log_best_effort_failure.call_args_list]
        assert "set_task_dates" in operations
        texts = [call.kwargs["text"] for call in orch.slack.post_message.call_args_list]
        assert not any("could not be saved" in text for text in texts)

    @pytest.mark.asyncio
    async def test_date_failure_notifies_requester_when_enabled(self):
        wrike = _wrike()
        wrike.set_task_dates.side_effect = WrikeValidationError("bad dates", status_code=400)
        orch = _orchestrator(wrike=wrike, config=WorkflowConfig(default_folder_id="F1", notify_on_date_failure=True))

        await orch.create_task(
            TaskDetails(title="Ship it", start_date="2025-01-10", due_date="2025-01-17"),
            "U_REQ",
            "C123",
        )
        await orch.runner.drain()

        notices = [
            call.kwargs
            for call in orch.slack.post_message.call_args_list
            if "could not be saved" in call.kwargs["text"]
        ]
        assert len(notices) == 1
        assert notices[0]["channel"] == "U_REQ"

    @pytest.mark.asyncio
    async def test_dropped_connection_on_date_write_is_not_fatal(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET" and request.url.path.endswith("/account"):
                return httpx.Response(200, json={"data": [{"id": "ACC"}]})
            if request.method == "POST":
                return httpx.Response(200, json={"data": [{"id": "IEAAA", "permalink": PERMALINK}]})
            raise httpx.RemoteProtocolError("Server disconnected without sending a response.", request=request)

        wrike = WrikeService(
            "tok",
            api_url="https://wrike.test/api/v4",
            backoff_s=0,
            transport=httpx.MockTransport(handler),
        )
        store = InMemoryTaskStore()
        error_sink = MagicMock()
        orch = _orchestrator(wrike=wrike, store=store, error_sink=error_sink)

        created = await orch.create_task(
            TaskDetails(title="Ship it", start_date="2025-01-10", due_date="2025-01-20"),
            "U_REQ",
            "C123",
        )
        await orch.runner.drain()

        assert created.task_id == "4242"
        assert await store.get_task("4242") is not None
        assert "C123" in _posted_channels(orch.slack)
        calls = error_sink.log_best_effort_failure.call_args_list
        date_errors = [call.kwargs["error"] for call in calls if call.kwargs["operation"] == "set_task_dates"]
        assert len(date_errors) == 1
        assert isinstance(date_errors[0], WrikeConnectionError)

    @pytest.mark.asyncio
    async def test_slow_error_sink_does_not_delay_creation(self):
        wrike = _wrike()
        wrike.set_task_dates.side_effect = WrikeValidationError("bad dates", status_code=400)
        release = threading.Event()
        error_sink = MagicMock()
        error_sink.log_best_effort_failure.side_effect = lambda **kwargs: release.wait(5)
        orch = _orchestrator(wrike=wrike, error_sink=error_sink)

        try:
            created = await asyncio.wait_for(
                orch.create_task(
                    TaskDetails(title="Ship it", start_date="2025-01-10", due_date="2025-01-17"),
                    "U_REQ",
                    "C123",
                ),
                timeout=1.0,
            )
        finally:
            release.set()
        await orch.runner.drain()

        assert created.task_id == "4242"
        operations = [call.kwargs["operation"] for call in error_sink.log_best_effort_failure.call_args_list]
        assert "set_task_dates" in operations

    @pytest.mark.asyncio
    async def test_database_outage_does_not_fail_creation(self):
        store = AsyncMock()
        store.save_task.side_effect = TaskStoreUnavailableError("db down")
        error_sink = MagicMock()
        orphan_db = MagicMock()
        orch = _orchestrator(store=store, error_sink=error_sink, orphan_db=orphan_db)

        created = await orch.create_task(TaskDetails(title="Ship it"), "U_REQ", "C123")
        await orch.runner.drain()

        assert created.task_id == "4242"
        store.save_task.assert_awaited_once()
        operations = [call.kwargs["operation"] for call in error_sink.log_best_effort_failure.call_args_list]
        assert "persist_task" in operations
        orphan_db.table.assert_called_with("taskbridge_events")
        row = orphan_db.table.return_value.insert.call_args.args[0]
        assert row["event_type"] == "wrike_orphan"
        assert row["payload"]["wrike_task_id"] == "IEAAA"

    @pytest.mark.asyncio
    async def test_database_outage_falls_back_to_memory(self):
        primary = AsyncMock()
        primary.backend_name = "supabase"
        primary.save_task.side_effect = TaskStoreUnavailableError("db down")
        fallback = InMemoryTaskStore()
        orch = _orchestrator(store=ResilientTaskStore(primary, fallback))

        await orch.create_task(TaskDetails(title="Ship it"), "U_REQ", "C123")
        await orch.runner.drain()

        assert (await fallback.get_task("4242")) is not None

    @pytest.mark.asyncio
    async def test_connectivity_failure_is_fatal(self):
        wrike = _wrike()
        wrike.test_connection.side_effect = WrikeTimeoutError("timed out")
        orch = _orchestrator(wrike=wrike)

        with pytest.raises(UpstreamTimeoutError) as exc_info:
            await orch.create_task(TaskDetails(title="Ship it"), "U_REQ", "C123")

        assert "retry" in exc_info.value.user_message
        wrike.create_task_in_folder.assert_not_awaited()
        assert orch.runner.pending == 0

    @pytest.mark.asyncio
    async def test_create_failure_is_fatal(self):
        wrike = _wrike()
        wrike.create_task_in_folder.side_effect = WrikeForbiddenError("denied", status_code=403)
        orch = _orchestrator(wrike=wrike)

        with pytest.raises(UpstreamWriteError) as exc_info:
            await orch.create_task(TaskDetails(title="Ship it"), "U_REQ", "C123")

        assert exc_info.value.status_code == 403
        assert "access denied" in exc_info.value.user_message
        orch.slack.post_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_custom_fields_and_assignee_name(self):
        config = WorkflowConfig(default_folder_id="F1", assignee_field_id="CF_A", description_field_id="CF_D")
        orch = _orchestrator(config=config)

        await orch.create_task(
            TaskDetails(title="Ship it", description="Details", assignee_user_id="U_ASSIGNEE"),
            "U_REQ",
            "C123",
        )
        await orch.runner.drain()

        _, payload = orch.wrike.create_task_in_folder.await_args.args
        assert payload["customFields"] == [
            {"id": "CF_A", "value": "Jane Doe"},
            {"id": "CF_D", "value": "Details"},
        ]
        assert "U_ASSIGNEE" in _posted_channels(orch.slack)

    @pytest.mark.asyncio
    async def test_assignee_lookup_failure_uses_raw_id(self):
        slack = _slack()
        slack.get_user_display_name.side_effect = SlackTimeoutError("slow")
        config = WorkflowConfig(default_folder_id="F1", assignee_field_id="CF_A")
        orch = _orchestrator(slack=slack, config=config)

        await orch.create_task(TaskDetails(title="Ship it", assignee_user_id="U_ASSIGNEE"), "U_REQ", "C123")
        await orch.runner.drain()

        _, payload = orch.wrike.create_task_in_folder.await_args.args
        assert payload["customFields"] == [{"id": "CF_A", "value": "U_ASSIGNEE"}]

    @pytest.mark.asyncio
    async def test_channel_folder_mapping(self):
        orch = _orchestrator(config=WorkflowConfig(default_folder_id="F1", channel_folder_map={"C123": "F9"}))

        await orch.create_task(TaskDetails(title="Ship it"), "U_REQ", "C123")
        await orch.runner.drain()

        assert orch.wrike.create_task_in_folder.await_args.args[0] == "F9"

    @pytest.mark.asyncio
    async def test_missing_folder_configuration(self):
        orch = _orchestrator(config=WorkflowConfig(default_folder_id=""))

        with pytest.raises(TaskBridgeError):
            await orch.create_task(TaskDetails(title="Ship it"), "U_REQ", "C123")
        orch.wrike.test_connection.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notification_failure_is_isolated(self):
        slack = _slack()
        counter = itertools.count(1)

        def post_message(*, channel, text, blocks=None):
            if channel == "C123":
                raise SlackAPIError("channel_not_found", error="channel_not_found")
            return SlackMessageResponse(ok=True, ts=f"{next(counter)}.000", channel=channel)

        slack.post_message.side_effect = post_message
        store = InMemoryTaskStore()
        orch = _orchestrator(slack=slack, store=store)

        await orch.create_task(TaskDetails(title="Ship it"), "U_REQ", "C123")
        await orch.runner.drain()

        record = await store.get_task("4242")
        assert record.channel_message is None
        assert record.user_message is not None


# ---------------------------------------------------------------------------
# updateTaskStatus
# ---------------------------------------------------------------------------


async def _seeded_store(**overrides) -> InMemoryTaskStore:
    values = dict(
        task_id="4242",
        wrike_id="IEAAA",
        title="Ship it",
        status="New",
        channel_id="C123",
        requested_by="U_REQ",
        wrike_permalink=PERMALINK,
        channel_message=MessageRef(channel="C123", timestamp="1.000"),
        user_message=MessageRef(channel="D_REQ", timestamp="2.000"),
    )
    values.update(overrides)
    store = InMemoryTaskStore()
    await store.save_task(Task(**values))
    return store


class TestUpdateTaskStatus:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(("task_id", "status"), [("", "Completed"), ("4242", "  "), (None, None)])
    async def test_blank_parts_rejected_before_io(self, task_id, status):
        store = AsyncMock()
        orch = _orchestrator(store=store)

        with pytest.raises(InvalidInteractionError):
            await orch.update_task_status(task_id, status)

        store.get_task.assert_not_awaited()
        orch.wrike.update_task.assert_not_awaited()
        orch.wrike.find_task_by_permalink.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_known_task_updates_everything(self):
        store = await _seeded_store()
        orch = _orchestrator(store=store)

        result = await orch.update_task_status("4242", "Completed")

        orch.wrike.update_task.assert_awaited_once_with("IEAAA", {"status": "Completed"})
        orch.wrike.find_task_by_permalink.assert_not_awaited()
        assert result.previous_status == "New"
        assert result.new_status == "Completed"

        record = await store.get_task("4242")
        assert record.status == "Completed"
        assert record.previous_status == "New"

        edited = {call.kwargs["channel"] for call in orch.slack.update_message.call_args_list}
        assert edited == {"C123", "D_REQ"}
        assert "C123" in _posted_channels(orch.slack)

    @pytest.mark.asyncio
    async def test_absent_message_refs_are_skipped(self):
        store = await _seeded_store(channel_message=None, user_message=None)
        orch = _orchestrator(store=store)

        await orch.update_task_status("4242", "InProgress")

        orch.slack.update_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_repeated_update_is_idempotent(self):
        store = await _seeded_store()
        orch = _orchestrator(store=store)

        await orch.update_task_status("4242", "Completed")
        first = await store.get_task("4242")
        await orch.update_task_status("4242", "Completed")
        second = await store.get_task("4242")

        assert first.status == second.status == "Completed"
        assert orch.wrike.update_task.await_args_list[0] == orch.wrike.update_task.await_args_list[1]

    @pytest.mark.asyncio
    async def test_custom_status_is_exclusive(self):
        store = await _seeded_store()
        config = WorkflowConfig(default_folder_id="F1", custom_status_ids={"InReview": "CS1"})
        orch = _orchestrator(store=store, config=config)

        await orch.update_task_status("4242", "InReview")

        orch.wrike.update_task.assert_awaited_once_with("IEAAA", {"customStatus": "CS1"})

    @pytest.mark.asyncio
    async def test_unknown_task_is_fatal_without_writes(self):
        store = InMemoryTaskStore()
        orch = _orchestrator(store=store)

        with pytest.raises(TaskResolutionError):
            await orch.update_task_status("9999", "Completed")

        orch.wrike.update_task.assert_not_awaited()
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_resolves_by_permalink(self):
        wrike = _wrike()
        wrike.find_task_by_permalink.return_value = WrikeTask(id="IEZZZ", permalink=PERMALINK)
        store = InMemoryTaskStore()
        orch = _orchestrator(wrike=wrike, store=store)

        result = await orch.update_task_status("4242", "OnHold")

        wrike.find_task_by_permalink.assert_awaited_once_with(PERMALINK)
        wrike.update_task.assert_awaited_once_with("IEZZZ", {"status": "Deferred"})
        assert result.previous_status == "Unknown"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_resolves_by_recent_task_scan(self):
        wrike = _wrike()
        wrike.find_task_by_permalink.side_effect = WrikeValidationError("bad permalink", status_code=400)
        wrike.list_recent_tasks.return_value = [
            WrikeTask(id="X1", permalink="https://www.wrike.com/open.htm?id=1"),
            WrikeTask(id="X2", permalink=PERMALINK),
        ]
        orch = _orchestrator(wrike=wrike, config=WorkflowConfig(default_folder_id="F1", lookup_scan_limit=50))

        await orch.update_task_status("4242", "Completed")

        wrike.list_recent_tasks.assert_awaited_once_with(limit=50)
        wrike.update_task.assert_awaited_once_with("X2", {"status": "Completed"})

    @pytest.mark.asyncio
    async def test_store_read_failure_is_not_fatal(self):
        store = AsyncMock()
        store.get_task.side_effect = TaskStoreUnavailableError("db down")
        wrike = _wrike()
        wrike.find_task_by_permalink.return_value = WrikeTask(id="IEAAA", permalink=PERMALINK)
        orch = _orchestrator(store=store, wrike=wrike)

        result = await orch.update_task_status("4242", "Completed")

        assert result.previous_status == "Unknown"
        store.update_task.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_upstream_failure_leaves_record_untouched(self):
        store = await _seeded_store()
        wrike = _wrike()
        wrike.update_task.side_effect = WrikeNotFoundError("gone", status_code=404)
        orch = _orchestrator(store=store, wrike=wrike)

        with pytest.raises(UpstreamWriteError):
            await orch.update_task_status("4242", "Completed")

        assert (await store.get_task("4242")).status == "New"
        orch.slack.update_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dropped_connection_surfaces_as_workflow_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.RemoteProtocolError("Server disconnected without sending a response.", request=request)

        wrike = WrikeService("tok", api_url="https://wrike.test/api/v4", backoff_s=0, transport=httpx.MockTransport(handler))
        store = await _seeded_store()
        orch = _orchestrator(store=store, wrike=wrike)

        with pytest.raises(TaskBridgeError) as exc_info:
            await orch.update_task_status("4242", "Completed")

        assert "Failed to update task status" in exc_info.value.user_message
        assert (await store.get_task("4242")).status == "New"

    @pytest.mark.asyncio
    async def test_message_edit_failure_is_not_fatal(self):
        store = await _seeded_store()
        slack = _slack()
        slack.update_message.side_effect = SlackAPIError("message_not_found", error="message_not_found")
        orch = _orchestrator(store=store, slack=slack)

        result = await orch.update_task_status("4242", "Completed")

        assert result.new_status == "Completed"
        assert (await store.get_task("4242")).status == "Completed"


# ---------------------------------------------------------------------------
# mirrorUpstreamStatus
# ---------------------------------------------------------------------------


class TestMirrorUpstreamStatus:
    @pytest.mark.asyncio
    async def test_mirrors_unambiguous_status(self):
        store = await _seeded_store()
        orch = _orchestrator(store=store)

        task = await orch.mirror_upstream_status("IEAAA", main_status="Completed")

        assert task is not None and task.status == "Completed"
        assert (await store.get_task("4242")).previous_status == "New"
        orch.slack.update_message.assert_awaited()
        orch.wrike.update_task.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_active_alone_is_ignored(self):
        store = await _seeded_store()
        orch = _orchestrator(store=store)

        assert await orch.mirror_upstream_status("IEAAA", main_status="Active") is None
        assert (await store.get_task("4242")).status == "New"

    @pytest.mark.asyncio
    async def test_untracked_task_is_ignored(self):
        orch = _orchestrator()
        assert await orch.mirror_upstream_status("UNKNOWN", main_status="Completed") is None
        orch.slack.update_message.assert_not_awaited()


# ---------------------------------------------------------------------------
# listTasks
# ---------------------------------------------------------------------------


class TestListTasks:
    @pytest.mark.asyncio
    async def test_lists_channel_tasks(self):
        store = await _seeded_store(assignee_user_id="U1")
        orch = _orchestrator(store=store)

        everything = await orch.list_tasks("C123")
        mine = await orch.list_tasks("C123", assignee_user_id="U2")

        assert [task.task_id for task in everything] == ["4242"]
        assert mine == []

    @pytest.mark.asyncio
    async def test_requires_a_channel(self):
        store = AsyncMock()
        orch = _orchestrator(store=store)

        with pytest.raises(InvalidInteractionError):
            await orch.list_tasks(None)
        store.list_tasks.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_failure_becomes_workflow_error(self):
        store = AsyncMock()
        store.list_tasks.side_effect = RuntimeError("db down")
        error_sink = MagicMock()
        orch = _orchestrator(store=store, error_sink=error_sink)

        with pytest.raises(TaskBridgeError) as exc_info:
            await orch.list_tasks("C123")
        await orch.runner.drain()

        assert "could not be loaded" in exc_info.value.user_message
        assert error_sink.log_best_effort_failure.call_args.kwargs["operation"] == "list_tasks"
