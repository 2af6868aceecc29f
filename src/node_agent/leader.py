"""Per-node leader election for the NodeTask controller."""

import threading
from collections.abc import Callable
from typing import Protocol

import structlog
from kubernetes.leaderelection import electionconfig, leaderelection  # type: ignore[import-untyped]
from kubernetes.leaderelection.resourcelock.configmaplock import (  # type: ignore[import-untyped]
    ConfigMapLock,
)

from .config import Settings

logger = structlog.get_logger()


class LeaseHolder(Protocol):
    """Tells the controller whether it is the active executor for its node."""

    identity: str

    def is_leader(self) -> bool:
        """Check if this instance currently holds the lease."""
        ...


class KubernetesLeaseHolder:
    """Campaigns for the per-node lease on a background thread.

    The lease is a ConfigMap lock named ``<service>.nodetask-<node>``. After
    losing the lease the holder campaigns again until ``stop()`` is called.
    Losing the lease is never acted on here; tasks started while leading are
    detected as orphans by whichever instance leads next.
    """

    def __init__(
        self,
        settings: Settings,
        on_promoted: Callable[[], None] | None = None,
        on_demoted: Callable[[], None] | None = None,
    ) -> None:
        """Initialize lease holder."""
        if settings.lease_duration_seconds <= settings.renew_deadline_seconds:
            raise ValueError(
                f"[lease_duration_seconds={settings.lease_duration_seconds}] is not greater "
                f"than [renew_deadline_seconds={settings.renew_deadline_seconds}]."
            )
        self.settings = settings
        self.identity = settings.agent_id
        self.lease_name = settings.lease_name
        self._on_promoted = on_promoted
        self._on_demoted = on_demoted
        self._leading = threading.Event()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    def is_leader(self) -> bool:
        """Check if this instance currently holds the lease."""
        return self._leading.is_set()

    def start(self) -> None:
        """Start campaigning in the background."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._campaign, name="nodetask-leader", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop campaigning after the current election round."""
        self._stopping.set()
        self._leading.clear()

    def _build_config(self) -> electionconfig.Config:
        lock = ConfigMapLock(self.lease_name, self.settings.lease_namespace, self.identity)
        return electionconfig.Config(
            lock,
            lease_duration=self.settings.lease_duration_seconds,
            renew_deadline=self.settings.renew_deadline_seconds,
            retry_period=self.settings.retry_period_seconds,
            onstarted_leading=self._promoted,
            onstopped_leading=self._demoted,
        )

    def _campaign(self) -> None:
        while not self._stopping.is_set():
            try:
                leaderelection.LeaderElection(self._build_config()).run()
            except Exception:
                logger.exception("Leader election round failed", lease=self.lease_name)
                self._leading.clear()
            self._stopping.wait(self.settings.retry_period_seconds)

    def _promoted(self) -> None:
        self._leading.set()
        logger.info("Promoted to NodeTask leader", lease=self.lease_name, identity=self.identity)
        if self._on_promoted:
            self._on_promoted()

    def _demoted(self) -> None:
        self._leading.clear()
        logger.warning(
            "Demoted from NodeTask leader", lease=self.lease_name, identity=self.identity
        )
        if self._on_demoted:
            self._on_demoted()
