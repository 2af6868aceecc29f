"""CLI entrypoint for the node agent's NodeTask controller."""

import asyncio
import logging
import signal
import sys
from datetime import UTC, datetime

import structlog

from .config import Settings, get_settings
from .kubernetes_client import KubernetesClient
from .leader import KubernetesLeaseHolder
from .process import ProcessExecutor
from .reconciler import NodeTaskReconciler
from .watcher import NodeTaskWatcher

logger = structlog.get_logger()


def configure_logging(level: str) -> None:
    """Configure structured JSON logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def ensure_host_folders(settings: Settings) -> None:
    """Create the runtime, agent and task script folders on the host (root only)."""
    for folder in (
        settings.host_neon_run_folder,
        settings.host_agent_folder,
        settings.host_agent_tasks_folder,
    ):
        if not folder.is_dir():
            folder.mkdir(parents=True, exist_ok=True)
            folder.chmod(0o700)
            logger.info("Created host folder", folder=str(folder))


async def run(settings: Settings) -> None:
    """Run the controller until SIGTERM or SIGINT."""
    k8s = KubernetesClient(settings)
    lease_holder = KubernetesLeaseHolder(settings, on_promoted=lambda: watcher.notify_promoted())
    reconciler = NodeTaskReconciler.from_settings(settings, k8s, ProcessExecutor())
    watcher = NodeTaskWatcher(settings, k8s, reconciler, lease_holder)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    lease_holder.start()
    try:
        await watcher.run(stop)
    finally:
        lease_holder.stop()


def main() -> int:
    """Main entrypoint for the node agent."""
    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info(
        "Starting node agent",
        timestamp=datetime.now(UTC).isoformat(),
        node=settings.node_name,
        agent_id=settings.agent_id,
    )

    if not settings.node_name:
        logger.error("NODE_AGENT_NODE_NAME is not set")
        return 1

    try:
        ensure_host_folders(settings)
        asyncio.run(run(settings))
        return 0
    except Exception as e:
        logger.exception("Node agent failed with error", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
