"""Watches NodeTasks for this node and feeds events to the reconciler."""

import asyncio
import threading
import time
from collections.abc import Awaitable

import structlog
from kubernetes.client.exceptions import ApiException  # type: ignore[import-untyped]

from .config import Settings
from .kubernetes_client import KubernetesClient
from .leader import LeaseHolder
from .models import NodeTask
from .reconciler import NodeTaskReconciler

logger = structlog.get_logger()

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
PROMOTED = "PROMOTED"


class NodeTaskWatcher:
    """Keeps a snapshot of this node's tasks and delivers one event at a time.

    Watch events arrive from a background thread and are queued onto the
    event loop. When no event arrives within the idle interval, the snapshot
    is refreshed from the API server and an idle tick is delivered instead.
    Nothing is delivered to the reconciler while this instance is not the
    leader for its node, but the snapshot is still kept current. On becoming
    leader every task in it is reconciled by name.
    """

    def __init__(
        self,
        settings: Settings,
        k8s: KubernetesClient,
        reconciler: NodeTaskReconciler,
        lease_holder: LeaseHolder,
    ) -> None:
        """Initialize watcher."""
        self.settings = settings
        self.k8s = k8s
        self.reconciler = reconciler
        self.lease_holder = lease_holder
        self.tasks: dict[str, NodeTask] = {}
        self._queue: asyncio.Queue[tuple[str, NodeTask | None]] = asyncio.Queue()
        self._stopping = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._leading = False

    def notify_promoted(self) -> None:
        """Wake the event loop after this instance won the lease. Thread safe."""
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (PROMOTED, None))

    def apply_event(self, event_type: str, task: NodeTask) -> bool:
        """Update the snapshot; returns True when the task should be reconciled."""
        if not task.targets_node(self.settings.node_name):
            return False
        if event_type == DELETED:
            self.tasks.pop(task.name, None)
            logger.info("task.removed", task=task.name)
            return False
        self.tasks[task.name] = task
        return True

    async def refresh(self) -> None:
        """Replace the snapshot with the API server's current view."""
        tasks = await asyncio.to_thread(self.k8s.list_node_tasks, self.settings.node_name)
        self.tasks = {task.name: task for task in tasks}

    async def catch_up(self) -> bool:
        """Reconcile every task by name if we became leader since the last check.

        Returns True when a catch-up pass ran.
        """
        if not self.lease_holder.is_leader():
            self._leading = False
            return False
        if self._leading:
            return False

        self._leading = True
        logger.info("Leading, reconciling all NodeTasks", count=len(self.tasks))
        for name in list(self.tasks):
            await self._dispatch(self.reconciler.reconcile(name, dict(self.tasks)))
        return True

    async def handle_event(self, event_type: str, task: NodeTask) -> None:
        """Apply a watch event and reconcile the task if we lead."""
        if not self.apply_event(event_type, task):
            return
        if not self.lease_holder.is_leader():
            self._leading = False
            logger.debug("Not leader, skipping reconcile", task=task.name)
            return
        if await self.catch_up():
            return
        await self.reconciler.reconcile(task.name, dict(self.tasks))

    async def idle(self) -> None:
        """Refresh the snapshot and run the cleanup sweep if we lead."""
        if not self.lease_holder.is_leader():
            self._leading = False
            logger.debug("Not leader, skipping idle sweep")
            return
        await self.catch_up()
        await self.refresh()
        await self.reconciler.reconcile(None, dict(self.tasks))

    def _watch(self, loop: asyncio.AbstractEventLoop) -> None:
        while not self._stopping.is_set():
            try:
                for event_type, task in self.k8s.watch_node_tasks(
                    self.settings.watch_timeout_seconds
                ):
                    loop.call_soon_threadsafe(self._queue.put_nowait, (event_type, task))
                    if self._stopping.is_set():
                        return
            except ApiException as e:
                logger.warning("NodeTask watch failed", status=e.status, error=str(e))
                time.sleep(self.settings.retry_period_seconds)
            except Exception:
                logger.exception("NodeTask watch crashed")
                time.sleep(self.settings.retry_period_seconds)

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Process events until ``stop`` is set."""
        stop = stop or asyncio.Event()
        loop = asyncio.get_running_loop()
        self._loop = loop
        interval = self.settings.idle_interval_seconds

        await self.refresh()
        thread = threading.Thread(
            target=self._watch, args=(loop,), name="nodetask-watch", daemon=True
        )
        thread.start()
        logger.info("Watching NodeTasks", node=self.settings.node_name, count=len(self.tasks))

        stopped = asyncio.create_task(stop.wait())
        next_idle = loop.time() + interval
        try:
            while not stop.is_set():
                getter = asyncio.create_task(self._queue.get())
                done, _ = await asyncio.wait(
                    {getter, stopped},
                    timeout=max(0.0, next_idle - loop.time()),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if getter not in done:
                    getter.cancel()
                    if stopped in done:
                        break
                    await self._dispatch(self.idle())
                    next_idle = loop.time() + interval
                    continue
                event_type, task = getter.result()
                if task is None:
                    await self._dispatch(self.catch_up())
                    continue
                await self._dispatch(self.handle_event(event_type, task))
        finally:
            stopped.cancel()
            self._stopping.set()
            await self.reconciler.close()
            logger.info("Stopped watching NodeTasks", node=self.settings.node_name)

    async def _dispatch(self, work: Awaitable[object]) -> None:
        try:
            await work
        except ApiException as e:
            logger.error("Reconcile failed", status=e.status, error=str(e))
        except Exception as e:
            logger.exception("Reconcile failed", error=str(e))
