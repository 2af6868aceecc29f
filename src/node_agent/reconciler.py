"""Core NodeTask reconciliation: execution, orphan/timeout detection and cleanup."""

import asyncio
import shutil
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol, TypeVar

import structlog

from .config import Settings
from .durations import format_duration
from .models import NodeTask, NodeTaskPhase, NodeTaskValidationError, StatusPatch
from .process import ExecuteResult, get_bash_command_line

logger = structlog.get_logger()

SCRIPT_NAME = "task.sh"

T = TypeVar("T")


class NodeTaskApi(Protocol):
    """The subset of ``KubernetesClient`` the reconciler uses."""

    def get_node_task(self, name: str) -> NodeTask | None: ...

    def patch_status(self, name: str, patch: StatusPatch) -> NodeTask | None: ...

    def replace_node_task(self, task: NodeTask) -> NodeTask | None: ...

    def delete_node_task(self, name: str) -> bool: ...

    def get_node_owner_reference(self, node_name: str) -> dict[str, Any] | None: ...


class Executor(Protocol):
    """The subset of ``ProcessExecutor`` the reconciler uses."""

    async def start_script(
        self, script_path: Path, timeout: timedelta, on_started: Callable[[int], None]
    ) -> Awaitable[ExecuteResult]: ...

    async def execute_capture(self, command: str, args: Any = ()) -> ExecuteResult: ...


class NodeTaskReconciler:
    """Drives the NodeTasks assigned to one node through their lifecycle.

    Named reconciles validate, promote and execute individual tasks. Idle
    reconciles run the cleanup sweep: orphan and timeout detection for
    running tasks, retention expiry, and removal of script folders no task
    refers to. Completion of each launched script is awaited on its own
    asyncio task so long scripts never block reconciliation.
    """

    def __init__(
        self,
        k8s: NodeTaskApi,
        executor: Executor,
        tasks_folder: Path,
        host_mount: Path,
        agent_id: str,
        node_name: str,
        process_start_timeout: timedelta = timedelta(seconds=15),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize reconciler."""
        self.k8s = k8s
        self.executor = executor
        self.tasks_folder = Path(tasks_folder)
        self.host_mount = Path(host_mount)
        self.agent_id = agent_id
        self.node_name = node_name
        self.process_start_timeout = process_start_timeout
        self._clock = clock or (lambda: datetime.now(UTC))
        self._launching: set[str] = set()
        self._completions: dict[str, asyncio.Task[None]] = {}
        self._active_run_ids: set[str] = set()
        self._retention_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls, settings: Settings, k8s: NodeTaskApi, executor: Executor
    ) -> "NodeTaskReconciler":
        """Create a reconciler wired to the configured host folders and identity."""
        return cls(
            k8s=k8s,
            executor=executor,
            tasks_folder=settings.host_agent_tasks_folder,
            host_mount=settings.host_mount,
            agent_id=settings.agent_id,
            node_name=settings.node_name,
            process_start_timeout=timedelta(seconds=settings.process_start_timeout_seconds),
        )

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking API call without stalling the event loop."""
        return await asyncio.to_thread(func, *args)

    # ------------------------------------------------------------------
    # Event entry points

    async def reconcile(self, name: str | None, tasks: Mapping[str, NodeTask]) -> None:
        """Handle a named task event, or an idle tick when ``name`` is None."""
        logger.info("Reconciling", task=name or "[IDLE]", count=len(tasks))

        if name is None:
            await self.cleanup(tasks)
            return

        task = tasks.get(name)
        if task is not None:
            await self.reconcile_task(task)

    async def reconcile_task(self, task: NodeTask) -> None:
        """Validate, promote, expire or execute a single task."""
        try:
            task.validate()
        except NodeTaskValidationError as e:
            await self._delete_invalid(task, e)
            return

        if task.status.phase == NodeTaskPhase.NEW:
            promoted = await self._promote(task)
            if promoted is None:
                return
            task = promoted

        if task.status.phase.is_terminal:
            await self.collect_expired([task])
            return

        if task.status.phase == NodeTaskPhase.PENDING:
            await self.execute(task)

    async def _promote(self, task: NodeTask) -> NodeTask | None:
        """New -> Pending, then tag the task with the node's owner reference."""
        current = await self._call(self.k8s.get_node_task, task.name)
        if current is None or current.status.phase != NodeTaskPhase.NEW:
            return current

        patch = StatusPatch.reset().replace("phase", NodeTaskPhase.PENDING)
        updated = await self._patch(current, patch)
        if updated is None:
            return None
        logger.info("task.pending", task=task.name)

        owner_reference = await self._call(self.k8s.get_node_owner_reference, self.node_name)
        if owner_reference is None:
            return updated

        if any(ref.get("uid") == owner_reference.get("uid") for ref in updated.owner_references):
            return updated

        updated.owner_references.append(owner_reference)
        replaced = await self._call(self.k8s.replace_node_task, updated)
        return replaced if replaced is not None else updated

    # ------------------------------------------------------------------
    # Execution

    async def execute(self, task: NodeTask) -> None:
        """Launch a Pending task's script, at most once per task name."""
        name = task.name
        if task.status.phase != NodeTaskPhase.PENDING:
            return
        if name in self._launching or name in self._completions:
            logger.debug("task.already_running", task=name)
            return

        start_after = task.spec.get_start_after()
        if start_after is not None and start_after > self._clock():
            logger.debug("task.deferred", task=name, start_after=start_after.isoformat())
            return

        self._launching.add(name)
        try:
            # The snapshot may lag behind our own patches.
            current = await self._call(self.k8s.get_node_task, name)
            if current is None or current.status.phase != NodeTaskPhase.PENDING:
                logger.debug("task.not_pending", task=name)
                return
            await self._launch(current)
        finally:
            self._launching.discard(name)

    def _render_script(self, task: NodeTask, task_folder: Path) -> str:
        body = (task.spec.bash_script or "").replace("\r\n", "\n")
        return (
            "\n"
            "#------------------------------------------------------------------------------\n"
            "# node-task: initialize special script variables\n"
            "\n"
            f"export NODE_ROOT={self.host_mount}\n"
            f"export SCRIPT_DIR={task_folder}\n"
            "\n"
            "#------------------------------------------------------------------------------\n"
            "\n"
            f"{body}\n"
        )

    async def _launch(self, task: NodeTask) -> None:
        name = task.name
        run_id = str(uuid.uuid4())
        task_folder = self.tasks_folder / run_id
        script_path = task_folder / SCRIPT_NAME
        command_line = get_bash_command_line(script_path)

        started = asyncio.Event()
        process_ids: list[int] = []

        def on_started(pid: int) -> None:
            process_ids.append(pid)
            started.set()
            logger.info("task.started", task=name, command=command_line, pid=pid)

        self._active_run_ids.add(run_id)
        try:
            task_folder.mkdir(parents=True, exist_ok=True)
            script_path.write_text(self._render_script(task, task_folder), newline="\n")
            waiter = await self.executor.start_script(
                script_path, task.spec.get_timeout(), on_started
            )
        except Exception as e:
            self._active_run_ids.discard(run_id)
            logger.warning("task.launch_failed", task=name, error=str(e), exc_info=True)
            failed = (
                StatusPatch()
                .replace("phase", NodeTaskPhase.FAILED)
                .replace("finish_timestamp", self._clock())
                .replace("exit_code", -1)
                .replace("error", f"EXECUTE FAILED: {e}")
            )
            await self._patch(task, failed)
            return

        try:
            await asyncio.wait_for(started.wait(), self.process_start_timeout.total_seconds())
        except TimeoutError:
            logger.warning("task.start_unconfirmed", task=name, command=command_line)

        start = self._clock()
        running = (
            StatusPatch()
            .replace("phase", NodeTaskPhase.RUNNING)
            .replace("start_timestamp", start)
            .replace("agent_id", self.agent_id)
            .replace("command_line", command_line)
            .replace("run_id", run_id)
        )
        if process_ids:
            running.replace("process_id", process_ids[0])
        try:
            await self._patch(task, running)
        except Exception:
            await self._abandon_launch(name, run_id, waiter, process_ids)
            raise
        logger.info(
            "task.running", task=name, run_id=run_id, pid=process_ids[0] if process_ids else None
        )

        completion = asyncio.create_task(
            self._complete(name, run_id, start, waiter, task.spec.capture_output),
            name=f"nodetask-{name}",
        )
        self._completions[name] = completion

        def _done(_: asyncio.Task[None]) -> None:
            self._completions.pop(name, None)
            self._active_run_ids.discard(run_id)

        completion.add_done_callback(_done)

    async def _abandon_launch(
        self,
        name: str,
        run_id: str,
        waiter: Awaitable[ExecuteResult],
        process_ids: list[int],
    ) -> None:
        """Stop a script whose Running status could not be recorded."""
        logger.warning("task.running_not_recorded", task=name, run_id=run_id)
        if isinstance(waiter, asyncio.Future):
            waiter.cancel()
        for pid in process_ids:
            # Scripts lead their own process group.
            try:
                result = await self.executor.execute_capture(
                    "kill", ["-s", "SIGKILL", "--", f"-{pid}"]
                )
            except Exception as e:
                logger.warning("Cannot kill task process group", task=name, pid=pid, error=str(e))
                continue
            if result.exit_code != 0:
                logger.warning(
                    "Cannot kill task process group", task=name, pid=pid, exit_code=result.exit_code
                )
        if not process_ids:
            logger.warning("task.process_unknown", task=name, run_id=run_id)
        self._active_run_ids.discard(run_id)

    async def _complete(
        self,
        name: str,
        run_id: str,
        start: datetime,
        waiter: Awaitable[ExecuteResult],
        capture_output: bool,
    ) -> None:
        """Wait for the script and record its terminal phase."""
        result: ExecuteResult | None = None
        timed_out = False
        wait_error: Exception | None = None

        try:
            result = await waiter
            logger.info("task.exited", task=name, exit_code=result.exit_code)
        except TimeoutError:
            timed_out = True
            logger.warning("task.timeout", task=name)
        except Exception as e:
            wait_error = e
            logger.warning("task.wait_failed", task=name, error=str(e), exc_info=True)

        current = await self._call(self.k8s.get_node_task, name)
        if (
            current is None
            or current.status.phase != NodeTaskPhase.RUNNING
            or current.status.run_id != run_id
        ):
            logger.info("task.superseded", task=name, run_id=run_id)
            return

        finish = self._clock()
        patch = (
            StatusPatch()
            .replace("finish_timestamp", finish)
            .replace("runtime", format_duration(finish - start))
        )
        if timed_out:
            patch.replace("phase", NodeTaskPhase.TIMEOUT).replace("exit_code", -1)
        elif result is None:
            patch.replace("phase", NodeTaskPhase.FAILED).replace("exit_code", -1)
            patch.replace("error", f"EXECUTE FAILED: {wait_error}")
        else:
            phase = NodeTaskPhase.FINISHED if result.success else NodeTaskPhase.FAILED
            patch.replace("phase", phase).replace("exit_code", result.exit_code)
            if capture_output:
                patch.replace("output", result.output_text).replace("error", result.error_text)

        await self._patch(current, patch)
        phase_name = patch.phase.value.lower() if patch.phase else "unknown"
        logger.info(f"task.{phase_name}", task=name, runtime=format_duration(finish - start))

    # ------------------------------------------------------------------
    # Kill

    async def kill(self, task: NodeTask) -> bool:
        """Terminate a running task's process if the pid still belongs to it.

        The live command line at ``processId`` must match the recorded
        ``commandLine`` exactly, otherwise the pid has been recycled and no
        signal is sent. Returns True when SIGTERM was delivered.
        """
        status = task.status
        if status.phase != NodeTaskPhase.RUNNING or status.process_id is None:
            return False

        pid = status.process_id
        result = await self.executor.execute_capture("ps", ["--pid", pid, "--format", "cmd="])
        if result.exit_code != 0:
            logger.debug("task.kill.no_process", task=task.name, pid=pid)
            return False

        lines = result.output_text.splitlines()
        live_command_line = lines[0].strip() if lines else ""
        if live_command_line != status.command_line:
            logger.info(
                "task.kill.pid_reused",
                task=task.name,
                pid=pid,
                expected=status.command_line,
                actual=live_command_line,
            )
            return False

        result = await self.executor.execute_capture("kill", ["-s", "SIGTERM", pid])
        if result.exit_code != 0:
            logger.warning(
                "Cannot kill task process", task=task.name, pid=pid, exit_code=result.exit_code
            )
            return False

        logger.info("task.killed", task=task.name, pid=pid)
        return True

    async def _kill_quietly(self, task: NodeTask) -> None:
        try:
            await self.kill(task)
        except Exception as e:
            logger.warning("Kill failed", task=task.name, error=str(e))

    # ------------------------------------------------------------------
    # Cleanup sweep

    async def cleanup(self, tasks: Mapping[str, NodeTask]) -> None:
        """Idle sweep over every known task for this node."""
        now = self._clock()
        valid: list[NodeTask] = []

        for task in list(tasks.values()):
            try:
                task.validate()
            except NodeTaskValidationError as e:
                try:
                    await self._delete_invalid(task, e)
                except Exception as delete_error:
                    logger.exception(
                        "task.delete_failed", task=task.name, error=str(delete_error)
                    )
                continue
            valid.append(task)

            try:
                await self._sweep_task(task, now)
            except Exception as e:
                logger.exception("task.sweep_failed", task=task.name, error=str(e))

        await self.collect_expired(valid)
        self.collect_script_folders(valid)

    async def _sweep_task(self, task: NodeTask, now: datetime) -> None:
        status = task.status
        if status.phase == NodeTaskPhase.RUNNING:
            started = status.start_timestamp
            if status.agent_id != self.agent_id:
                logger.warning(
                    "task.orphaned",
                    task=task.name,
                    task_agent_id=status.agent_id,
                    agent_id=self.agent_id,
                )
                await self._mark_stopped(task, NodeTaskPhase.ORPHANED, now)
            elif started and now - started >= task.spec.get_timeout():
                logger.warning("task.timeout", task=task.name, timeout=task.spec.timeout)
                await self._mark_stopped(task, NodeTaskPhase.TIMEOUT, now)
        elif status.phase == NodeTaskPhase.PENDING and task.spec.start_after_timestamp:
            await self.execute(task)

    async def _mark_stopped(self, task: NodeTask, phase: NodeTaskPhase, now: datetime) -> None:
        """Kill a running task's process and record ``phase`` as its terminal phase."""
        completion = self._completions.get(task.name)
        if completion is not None:
            # The exit caused by the kill below must not be recorded as well.
            completion.cancel()
            await asyncio.gather(completion, return_exceptions=True)

        await self._kill_quietly(task)

        current = await self._call(self.k8s.get_node_task, task.name)
        if (
            current is None
            or current.status.phase != NodeTaskPhase.RUNNING
            or current.status.run_id != task.status.run_id
        ):
            logger.info("task.superseded", task=task.name, phase=phase.value)
            return

        patch = (
            StatusPatch()
            .replace("phase", phase)
            .replace("finish_timestamp", now)
            .replace("exit_code", -1)
        )
        if current.status.start_timestamp:
            patch.replace("runtime", format_duration(now - current.status.start_timestamp))
        await self._patch(current, patch)

    async def collect_expired(self, tasks: Iterable[NodeTask]) -> list[str]:
        """Delete terminal tasks retained past their retention time.

        This is the only path that deletes expired tasks; named reconciles and
        the idle sweep both go through it, one caller at a time.
        """
        deleted: list[str] = []
        async with self._retention_lock:
            now = self._clock()
            for task in tasks:
                finish = task.status.finish_timestamp
                if not task.status.phase.is_terminal or finish is None:
                    continue
                retained = now - finish
                if retained < task.spec.get_retention_time():
                    continue
                logger.info("task.expired", task=task.name, retained=format_duration(retained))
                try:
                    await self._call(self.k8s.delete_node_task, task.name)
                except Exception as e:
                    logger.exception("task.delete_failed", task=task.name, error=str(e))
                    continue
                deleted.append(task.name)
        return deleted

    def collect_script_folders(self, tasks: Iterable[NodeTask]) -> list[str]:
        """Remove script folders whose run id no known task refers to."""
        known = {task.status.run_id for task in tasks if task.status.run_id}
        known |= self._active_run_ids

        if not self.tasks_folder.is_dir():
            return []

        removed: list[str] = []
        for folder in sorted(self.tasks_folder.iterdir()):
            if not folder.is_dir() or folder.name in known:
                continue
            logger.warning("Removing node task host script folder", folder=folder.name)
            shutil.rmtree(folder, ignore_errors=True)
            removed.append(folder.name)
        return removed

    # ------------------------------------------------------------------
    # Helpers

    async def _patch(self, task: NodeTask, patch: StatusPatch) -> NodeTask | None:
        patch.validate(task.status.phase)
        return await self._call(self.k8s.patch_status, task.name, patch)

    async def _delete_invalid(self, task: NodeTask, error: NodeTaskValidationError) -> None:
        logger.warning("task.invalid", task=task.name, error=str(error))
        await self._call(self.k8s.delete_node_task, task.name)
        logger.info("task.deleted", task=task.name, reason="invalid")

    async def wait_for_completions(self) -> None:
        """Wait until every launched script has finished and been recorded."""
        while self._completions:
            await asyncio.gather(*list(self._completions.values()), return_exceptions=True)

    async def close(self) -> None:
        """Stop awaiting launched scripts. Their tasks stay Running for the next leader."""
        completions = list(self._completions.values())
        for completion in completions:
            completion.cancel()
        await asyncio.gather(*completions, return_exceptions=True)
