"""Kubernetes client wrapper for the NodeTask controller."""

from collections.abc import Iterator
from typing import Any

import structlog
from kubernetes import client, config, watch  # type: ignore[import-untyped]
from kubernetes.client.exceptions import ApiException  # type: ignore[import-untyped]
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential
from urllib3.exceptions import HTTPError

from .config import Settings
from .models import NodeTask, StatusPatch

logger = structlog.get_logger()

_TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}


def is_transient_error(error: BaseException) -> bool:
    """Check if an API error is worth retrying."""
    if isinstance(error, ApiException):
        return error.status in _TRANSIENT_STATUS_CODES
    return isinstance(error, HTTPError | ConnectionError)


api_retry = retry(
    retry=retry_if_exception(is_transient_error),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.5, max=10),
    reraise=True,
)


class KubernetesClient:
    """Wrapper for the NodeTask and Node API operations the agent needs."""

    def __init__(self, settings: Settings) -> None:
        """Initialize Kubernetes client."""
        self.settings = settings
        self._load_config()
        self.core_v1 = client.CoreV1Api()
        self.custom_api = client.CustomObjectsApi()

    def _load_config(self) -> None:
        """Load Kubernetes configuration."""
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        except config.ConfigException:
            config.load_kube_config()
            logger.info("Loaded local Kubernetes config")

    @property
    def _resource(self) -> dict[str, str]:
        return {
            "group": self.settings.group,
            "version": self.settings.version,
            "plural": self.settings.plural,
        }

    @api_retry
    def list_node_tasks(self, node_name: str | None = None) -> list[NodeTask]:
        """List NodeTasks, optionally only those targeting ``node_name``."""
        response = self.custom_api.list_cluster_custom_object(**self._resource)
        tasks = [NodeTask.from_dict(item) for item in response.get("items", [])]
        if node_name is None:
            return tasks
        return [task for task in tasks if task.targets_node(node_name)]

    def watch_node_tasks(self, timeout_seconds: int) -> Iterator[tuple[str, NodeTask]]:
        """Stream ``(event_type, task)`` pairs until the server closes the watch."""
        watcher = watch.Watch()
        try:
            for event in watcher.stream(
                self.custom_api.list_cluster_custom_object,
                timeout_seconds=timeout_seconds,
                **self._resource,
            ):
                obj = event.get("object")
                if not isinstance(obj, dict) or event.get("type") == "ERROR":
                    logger.warning("Unexpected NodeTask watch event", event_type=event.get("type"))
                    continue
                yield event["type"], NodeTask.from_dict(obj)
        finally:
            watcher.stop()

    @api_retry
    def get_node_task(self, name: str) -> NodeTask | None:
        """Get a NodeTask by name, or None if it no longer exists."""
        try:
            obj = self.custom_api.get_cluster_custom_object(name=name, **self._resource)
            return NodeTask.from_dict(obj)
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    @api_retry
    def patch_status(self, name: str, patch: StatusPatch) -> NodeTask | None:
        """Apply a status patch; returns None if the task was deleted meanwhile."""
        try:
            obj = self.custom_api.patch_cluster_custom_object_status(
                name=name,
                body=patch.to_body(),
                **self._resource,
            )
            return NodeTask.from_dict(obj)
        except ApiException as e:
            if e.status == 404:
                logger.info("NodeTask gone before status patch", task=name)
                return None
            raise

    @api_retry
    def replace_node_task(self, task: NodeTask) -> NodeTask | None:
        """Replace the whole resource; returns None if it was deleted or changed meanwhile."""
        try:
            obj = self.custom_api.replace_cluster_custom_object(
                name=task.name,
                body=task.to_dict(self.settings.api_version),
                **self._resource,
            )
            return NodeTask.from_dict(obj)
        except ApiException as e:
            if e.status in (404, 409):
                logger.info("NodeTask replace superseded", task=task.name, status=e.status)
                return None
            raise

    @api_retry
    def delete_node_task(self, name: str) -> bool:
        """Delete a NodeTask; returns False if it was already gone."""
        try:
            self.custom_api.delete_cluster_custom_object(name=name, **self._resource)
            return True
        except ApiException as e:
            if e.status == 404:
                logger.info("NodeTask already deleted", task=name)
                return False
            raise

    @api_retry
    def get_node_owner_reference(self, node_name: str) -> dict[str, Any] | None:
        """Build an owner reference to the node so its tasks are garbage collected with it."""
        try:
            node = self.core_v1.read_node(name=node_name)
        except ApiException as e:
            if e.status == 404:
                logger.warning("Node not found for owner reference", node=node_name)
                return None
            raise
        return {
            "apiVersion": "v1",
            "kind": "Node",
            "name": node.metadata.name,
            "uid": node.metadata.uid,
        }
