import asyncio

import pytest

from browser_orchestrator import tool_catalog
from browser_orchestrator.broadcast import LogBroadcaster
from browser_orchestrator.config import OrchestratorSettings
from browser_orchestrator.errors import (
    EmptyPromptError,
    MissingCredentialsError,
    NoReplayStateError,
    TaskAlreadyRunningError,
    TaskNotFoundError,
)
from browser_orchestrator.models import TaskStatus
from browser_orchestrator.observability.tracing import TraceWriter
from browser_orchestrator.service import CANCELLED_MESSAGE, TaskService
from browser_orchestrator.storage import InMemoryTaskStore

from fakes import SESSION_ID, FakeProvider, ScriptedOracle, answer, make_client, reply_with, tool_call


def navigate_then_answer():
    return ScriptedOracle(
        [
            reply_with(tool_call(tool_catalog.NAVIGATE, url="https://example.com")),
            answer("Example Domain"),
        ]
    )


def build_service(tmp_path, provider=None, oracle=None, api_key="sk-test"):
    provider = provider or FakeProvider()
    oracle = oracle or navigate_then_answer()
    settings = OrchestratorSettings(openai_api_key=api_key, max_iterations=5)
    service = TaskService(
        InMemoryTaskStore(),
        settings,
        TraceWriter(tmp_path / "traces.jsonl"),
        client_factory=lambda: make_client(provider),
        oracle_factory=lambda: oracle,
        broadcaster=LogBroadcaster(),
    )
    return service, provider, oracle


@pytest.mark.asyncio
async def test_submit_runs_to_completion(tmp_path):
    service, _, _ = build_service(tmp_path)

    handle = await service.submit("  What is the title of example.com?  ")
    assert handle.task.status == TaskStatus.RUNNING
    assert handle.task.prompt == "What is the title of example.com?"

    task = await service.wait(handle)

    assert task.status == TaskStatus.COMPLETED
    assert task.result == "Example Domain"
    assert task.duration_ms is not None
    assert task.replay_state.url == "https://example.com"
    assert service.handle(task.id) is None
    assert any(entry.message == "Task completed: Example Domain" for entry in await service.store.task_logs(task.id))

    events = [record["payload"]["event"] for record in service.trace_writer.tail()]
    assert events == ["start", "end"]


@pytest.mark.asyncio
async def test_submit_requires_credentials(tmp_path):
    service, provider, _ = build_service(tmp_path, api_key=None)

    with pytest.raises(MissingCredentialsError):
        await service.submit("anything")
    assert await service.store.all_tasks() == []
    assert provider.calls == []


@pytest.mark.asyncio
async def test_submit_rejects_blank_prompt(tmp_path):
    service, _, _ = build_service(tmp_path)

    with pytest.raises(EmptyPromptError):
        await service.submit("   ")


@pytest.mark.asyncio
async def test_only_one_task_runs_at_a_time(tmp_path):
    oracle = navigate_then_answer()
    oracle.gate = asyncio.Event()
    service, _, _ = build_service(tmp_path, oracle=oracle)

    handle = await service.submit("first")
    with pytest.raises(TaskAlreadyRunningError):
        await service.submit("second")

    oracle.gate.set()
    task = await service.wait(handle)
    assert task.status == TaskStatus.COMPLETED
    assert len(await service.store.all_tasks()) == 1


@pytest.mark.asyncio
async def test_cancel_marks_task_failed_and_keeps_trace(tmp_path):
    oracle = ScriptedOracle([], default=reply_with(tool_call(tool_catalog.GET_URL)))
    oracle.gate = asyncio.Event()
    service, provider, _ = build_service(tmp_path, oracle=oracle)

    handle = await service.submit("loop")
    while oracle.turns == 0:
        await asyncio.sleep(0)
    cancelled = await service.cancel()
    assert cancelled.status == TaskStatus.FAILED
    assert cancelled.error == CANCELLED_MESSAGE

    oracle.gate.set()
    task = await service.wait(handle)

    assert task.status == TaskStatus.FAILED
    assert task.error == CANCELLED_MESSAGE
    assert task.replay_state.session_id == SESSION_ID
    assert len(provider.calls_to(tool_catalog.SESSION_CLOSE)) == 1


@pytest.mark.asyncio
async def test_cancel_without_running_task(tmp_path):
    service, _, _ = build_service(tmp_path)
    assert await service.cancel() is None
    assert await service.cancel("unknown") is None


@pytest.mark.asyncio
async def test_failed_task_keeps_error_and_trace(tmp_path):
    provider = FakeProvider()
    oracle = ScriptedOracle(
        [], default=reply_with(tool_call(tool_catalog.NAVIGATE, url="https://example.com"))
    )
    service, _, _ = build_service(tmp_path, provider=provider, oracle=oracle)

    task = await service.wait(await service.submit("never finishes"))

    assert task.status == TaskStatus.FAILED
    assert task.error == "Max iterations reached"
    assert len(task.replay_state.actions) == 1


@pytest.mark.asyncio
async def test_replay_consumes_source_trace(tmp_path):
    service, provider, _ = build_service(tmp_path)
    source = await service.wait(await service.submit("What is the title of example.com?"))
    provider.calls.clear()

    handle = await service.replay(source.id)
    assert handle.task.prompt == "Replay: What is the title of example.com?"
    assert handle.task.replay_of == source.id
    assert not handle.cancellable

    replayed = await service.wait(handle)

    assert replayed.status == TaskStatus.COMPLETED
    assert replayed.result["success"] is True
    assert tool_catalog.SESSION_CREATE not in provider.names()
    assert provider.calls_to(tool_catalog.NAVIGATE) == [{"url": "https://example.com", "sessionId": SESSION_ID}]
    assert (await service.store.get(source.id)).replay_state is None

    with pytest.raises(NoReplayStateError):
        await service.replay(source.id)


@pytest.mark.asyncio
async def test_failed_replay_still_consumes_trace(tmp_path):
    service, provider, _ = build_service(tmp_path)
    source = await service.wait(await service.submit("open example.com"))
    provider.fail_next(tool_catalog.NAVIGATE, "net::ERR_CONNECTION_RESET")

    replayed = await service.wait(await service.replay(source.id))

    assert replayed.status == TaskStatus.FAILED
    assert "ERR_CONNECTION_RESET" in replayed.error
    assert (await service.store.get(source.id)).replay_state is None


@pytest.mark.asyncio
async def test_replay_of_unknown_task(tmp_path):
    service, _, _ = build_service(tmp_path)
    with pytest.raises(TaskNotFoundError):
        await service.replay("missing")


@pytest.mark.asyncio
async def test_logs_are_broadcast(tmp_path):
    service, _, _ = build_service(tmp_path)
    queue = service.broadcaster.subscribe()

    task = await service.wait(await service.submit("open example.com"))

    messages = []
    while not queue.empty():
        messages.append(queue.get_nowait())
    assert messages
    assert all(message["type"] == "log" and message["taskId"] == task.id for message in messages)
    assert any(message["log"]["screenshot"] for message in messages)
    service.broadcaster.unsubscribe(queue)
    assert service.broadcaster.subscriber_count == 0


class FailingTraceWriter(TraceWriter):
    def __init__(self, path, component):
        super().__init__(path)
        self.component = component

    async def write(self, record):
        if record.component == self.component:
            raise OSError("disk full")
        await super().write(record)


@pytest.mark.asyncio
async def test_trace_failure_does_not_leave_task_running(tmp_path):
    service, _, _ = build_service(tmp_path)
    service.trace_writer = FailingTraceWriter(tmp_path / "traces.jsonl", "orchestrator")

    task = await service.wait(await service.submit("open example.com"))

    assert task.status == TaskStatus.FAILED
    assert task.error == "disk full"
    assert task.completed_at is not None
    assert service.handle(task.id) is None

    service.trace_writer = TraceWriter(tmp_path / "traces.jsonl")
    follow_up = await service.wait(await service.submit("open example.com again"))
    assert follow_up.status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_trace_failure_during_replay_fails_the_replay(tmp_path):
    service, _, _ = build_service(tmp_path)
    source = await service.wait(await service.submit("open example.com"))
    service.trace_writer = FailingTraceWriter(tmp_path / "traces.jsonl", "replay")

    replayed = await service.wait(await service.replay(source.id))

    assert replayed.status == TaskStatus.FAILED
    assert replayed.error == "disk full"
    assert await service.store.current_task() is None


@pytest.mark.asyncio
async def test_submit_is_rejected_until_cancelled_loop_exits(tmp_path):
    oracle = navigate_then_answer()
    oracle.gate = asyncio.Event()
    service, provider, _ = build_service(tmp_path, oracle=oracle)

    first = await service.submit("first")
    while oracle.turns == 0:
        await asyncio.sleep(0)
    await service.cancel(first.task_id)

    with pytest.raises(TaskAlreadyRunningError):
        await service.submit("second")

    oracle.gate.set()
    cancelled = await service.wait(first)
    assert cancelled.error == CANCELLED_MESSAGE
    assert len(provider.calls_to(tool_catalog.SESSION_CLOSE)) == 1

    second = await service.wait(await service.submit("second"))
    assert second.status == TaskStatus.COMPLETED
    assert second.result == "Example Domain"
