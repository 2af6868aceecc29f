"""Pytest fixtures for node agent tests."""

import asyncio
import copy
from collections.abc import AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from node_agent.config import Settings
from node_agent.models import NodeTask, NodeTaskPhase, NodeTaskSpec, NodeTaskStatus, StatusPatch
from node_agent.process import ExecuteResult
from node_agent.reconciler import NodeTaskReconciler

AGENT_ID = "neon-node-agent-abc12-1a2b3c4d"
NODE_NAME = "n1"
NOW = datetime(2024, 1, 15, 10, 0, 0, tzinfo=UTC)


class FakeNodeTaskStore:
    """In-memory stand-in for the NodeTask API used by the reconciler."""

    def __init__(self) -> None:
        self.tasks: dict[str, NodeTask] = {}
        self.patches: list[tuple[str, StatusPatch]] = []
        self.deleted: list[str] = []
        self.replaced: list[str] = []
        self.phase_history: dict[str, list[NodeTaskPhase]] = {}
        self.owner_reference: dict[str, Any] | None = {
            "apiVersion": "v1",
            "kind": "Node",
            "name": NODE_NAME,
            "uid": "node-uid-1",
        }
        # API failures to raise, by task name or by patched phase.
        self.get_errors: dict[str, Exception] = {}
        self.delete_errors: dict[str, Exception] = {}
        self.patch_errors: dict[NodeTaskPhase, Exception] = {}

    def add(self, task: NodeTask) -> NodeTask:
        self.tasks[task.name] = copy.deepcopy(task)
        self.phase_history[task.name] = [task.status.phase]
        return task

    def get_node_task(self, name: str) -> NodeTask | None:
        if name in self.get_errors:
            raise self.get_errors[name]
        task = self.tasks.get(name)
        return copy.deepcopy(task) if task else None

    def patch_status(self, name: str, patch: StatusPatch) -> NodeTask | None:
        if patch.phase in self.patch_errors:
            raise self.patch_errors[patch.phase]
        self.patches.append((name, patch))
        task = self.tasks.get(name)
        if task is None:
            return None
        task.status = patch.apply(task.status)
        self.phase_history[name].append(task.status.phase)
        return copy.deepcopy(task)

    def replace_node_task(self, task: NodeTask) -> NodeTask | None:
        self.replaced.append(task.name)
        if task.name not in self.tasks:
            return None
        self.tasks[task.name] = copy.deepcopy(task)
        return copy.deepcopy(task)

    def delete_node_task(self, name: str) -> bool:
        if name in self.delete_errors:
            raise self.delete_errors[name]
        self.deleted.append(name)
        return self.tasks.pop(name, None) is not None

    def get_node_owner_reference(self, node_name: str) -> dict[str, Any] | None:
        return dict(self.owner_reference) if self.owner_reference else None

    def snapshot(self) -> dict[str, NodeTask]:
        return {name: copy.deepcopy(task) for name, task in self.tasks.items()}


class FakeExecutor:
    """Records launches and answers ``ps``/``kill`` from a fake process table."""

    def __init__(self) -> None:
        self.launched: list[Path] = []
        self.waiters: list[asyncio.Future[ExecuteResult]] = []
        self.commands: list[list[str]] = []
        self.processes: dict[int, str] = {}
        self.kill_exit_code = 0
        self.start_error: Exception | None = None
        self.report_pid = True
        self.next_pid = 4000

    async def start_script(
        self, script_path: Path, timeout: timedelta, on_started: Callable[[int], None]
    ) -> asyncio.Future[ExecuteResult]:
        if self.start_error is not None:
            raise self.start_error
        pid = self.next_pid
        self.next_pid += 1
        self.launched.append(script_path)
        self.processes[pid] = f"/bin/bash {script_path}"
        if self.report_pid:
            on_started(pid)
        waiter: asyncio.Future[ExecuteResult] = asyncio.get_running_loop().create_future()
        self.waiters.append(waiter)
        return waiter

    async def execute_capture(self, command: str, args: Any = ()) -> ExecuteResult:
        argv = [command, *[str(arg) for arg in args]]
        self.commands.append(argv)
        if command == "ps":
            command_line = self.processes.get(int(argv[2]))
            if command_line is None:
                return ExecuteResult(exit_code=1)
            return ExecuteResult(exit_code=0, output_text=f"{command_line}\n")
        if command == "kill":
            return ExecuteResult(exit_code=self.kill_exit_code)
        return ExecuteResult(exit_code=127, error_text=f"{command}: not found")

    @property
    def kill_commands(self) -> list[list[str]]:
        return [argv for argv in self.commands if argv[0] == "kill"]


def make_task(
    name: str = "task-1",
    node: str | None = NODE_NAME,
    script: str | None = "echo hello",
    timeout: str = "30s",
    retention_time: str = "1h",
    **status: Any,
) -> NodeTask:
    """Build a NodeTask with the given spec and status fields."""
    return NodeTask(
        name=name,
        spec=NodeTaskSpec(
            node=node,
            bash_script=script,
            timeout=timeout,
            retention_time=retention_time,
        ),
        status=NodeTaskStatus(**status),
        resource_version="1",
    )


class Clock:
    """Settable clock for deterministic timestamps."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create test settings."""
    return Settings(
        node_name=NODE_NAME,
        agent_id=AGENT_ID,
        host_mount=tmp_path / "host",
        idle_interval_seconds=0.05,
        process_start_timeout_seconds=0.2,
    )


@pytest.fixture
def store() -> FakeNodeTaskStore:
    """Create an empty NodeTask store."""
    return FakeNodeTaskStore()


@pytest.fixture
def executor() -> FakeExecutor:
    """Create a fake process executor."""
    return FakeExecutor()


@pytest.fixture
def clock() -> Clock:
    """Create a clock fixed at NOW."""
    return Clock(NOW)


@pytest.fixture
def tasks_folder(settings: Settings) -> Path:
    """Create the host task script folder."""
    folder = settings.host_agent_tasks_folder
    folder.mkdir(parents=True)
    return folder


@pytest.fixture
async def reconciler(
    store: FakeNodeTaskStore,
    executor: FakeExecutor,
    tasks_folder: Path,
    settings: Settings,
    clock: Clock,
) -> AsyncIterator[NodeTaskReconciler]:
    """Create a reconciler wired to the fakes."""
    reconciler = NodeTaskReconciler(
        k8s=store,
        executor=executor,
        tasks_folder=tasks_folder,
        host_mount=settings.host_mount,
        agent_id=AGENT_ID,
        node_name=NODE_NAME,
        process_start_timeout=timedelta(seconds=0.2),
        clock=clock,
    )
    yield reconciler
    await reconciler.close()
