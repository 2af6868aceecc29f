"""Data models for the NodeTask controller."""

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .durations import parse_duration

DEFAULT_TIMEOUT = "5m"
DEFAULT_RETENTION_TIME = "10m"


class NodeTaskValidationError(Exception):
    """Raised when a NodeTask resource is malformed."""


class NodeTaskPhase(Enum):
    """Lifecycle phase of a NodeTask."""

    NEW = "New"
    PENDING = "Pending"
    RUNNING = "Running"
    FINISHED = "Finished"
    FAILED = "Failed"
    TIMEOUT = "Timeout"
    ORPHANED = "Orphaned"

    @property
    def rank(self) -> int:
        """Position along New -> Pending -> Running -> terminal."""
        return _PHASE_RANKS[self]

    @property
    def is_terminal(self) -> bool:
        """Check if the task has stopped executing."""
        return self.rank == _PHASE_RANKS[NodeTaskPhase.FINISHED]

    def can_transition_to(self, other: "NodeTaskPhase") -> bool:
        """Check that moving to ``other`` never goes backward.

        Re-asserting the current phase is allowed; moving between two
        terminal phases is not.
        """
        return other == self or other.rank > self.rank


_PHASE_RANKS = {
    NodeTaskPhase.NEW: 0,
    NodeTaskPhase.PENDING: 1,
    NodeTaskPhase.RUNNING: 2,
    NodeTaskPhase.FINISHED: 3,
    NodeTaskPhase.FAILED: 3,
    NodeTaskPhase.TIMEOUT: 3,
    NodeTaskPhase.ORPHANED: 3,
}


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an RFC3339 timestamp into an aware UTC datetime.

    Raises:
        TypeError: If the value is neither a string nor a datetime
        ValueError: If the string is not a valid timestamp
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif not isinstance(value, str):
        raise TypeError(f"timestamp must be a string, got {type(value).__name__}")
    else:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    """Format a datetime as RFC3339 with a ``Z`` suffix."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


@dataclass
class NodeTaskSpec:
    """Desired state of a NodeTask. Immutable after creation."""

    node: str | None = None
    bash_script: str | None = None
    timeout: str = DEFAULT_TIMEOUT
    retention_time: str = DEFAULT_RETENTION_TIME
    capture_output: bool = True
    start_after_timestamp: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "NodeTaskSpec":
        """Create a spec from the resource's ``spec`` object."""
        data = data or {}
        return cls(
            node=data.get("node"),
            bash_script=data.get("bashScript"),
            timeout=data.get("timeout") or DEFAULT_TIMEOUT,
            retention_time=data.get("retentionTime") or DEFAULT_RETENTION_TIME,
            capture_output=bool(data.get("captureOutput", True)),
            start_after_timestamp=data.get("startAfterTimestamp"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the resource's ``spec`` object."""
        data: dict[str, Any] = {
            "node": self.node,
            "bashScript": self.bash_script,
            "timeout": self.timeout,
            "retentionTime": self.retention_time,
            "captureOutput": self.capture_output,
        }
        if self.start_after_timestamp:
            data["startAfterTimestamp"] = self.start_after_timestamp
        return data

    def get_timeout(self) -> timedelta:
        """Maximum time the script may run."""
        try:
            return parse_duration(self.timeout)
        except ValueError as e:
            raise NodeTaskValidationError(f"[spec.timeout={self.timeout}]: {e}") from e

    def get_retention_time(self) -> timedelta:
        """How long to keep the task after it has finished."""
        try:
            return parse_duration(self.retention_time)
        except ValueError as e:
            raise NodeTaskValidationError(f"[spec.retentionTime={self.retention_time}]: {e}") from e

    def get_start_after(self) -> datetime | None:
        """Earliest time the task may be started, if any."""
        try:
            return parse_timestamp(self.start_after_timestamp)
        except (TypeError, ValueError) as e:
            raise NodeTaskValidationError(
                f"[spec.startAfterTimestamp={self.start_after_timestamp}]: {e}"
            ) from e

    def validate(self) -> None:
        """Check required fields and duration ranges.

        Raises:
            NodeTaskValidationError: If any field is missing or out of range
        """
        if not self.node or not isinstance(self.node, str):
            raise NodeTaskValidationError("[spec.node]: cannot be NULL or empty.")
        if not self.bash_script or not isinstance(self.bash_script, str):
            raise NodeTaskValidationError("[spec.bashScript]: cannot be NULL or empty.")
        if self.get_timeout() <= timedelta(0):
            raise NodeTaskValidationError(
                f"[spec.timeout={self.timeout}]: must be greater than zero."
            )
        if self.get_retention_time() < timedelta(0):
            raise NodeTaskValidationError(
                f"[spec.retentionTime={self.retention_time}]: cannot be negative."
            )
        self.get_start_after()


@dataclass
class NodeTaskStatus:
    """Observed state of a NodeTask, written only by the owning node's agent."""

    phase: NodeTaskPhase = NodeTaskPhase.NEW
    agent_id: str | None = None
    process_id: int | None = None
    command_line: str | None = None
    run_id: str | None = None
    start_timestamp: datetime | None = None
    finish_timestamp: datetime | None = None
    runtime: str | None = None
    exit_code: int | None = None
    output: str | None = None
    error: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "NodeTaskStatus":
        """Create a status from the resource's ``status`` object.

        Raises:
            ValueError: If the phase or a timestamp cannot be parsed
        """
        data = data or {}
        phase = data.get("phase") or NodeTaskPhase.NEW.value
        process_id = data.get("processId")
        exit_code = data.get("exitCode")
        return cls(
            phase=NodeTaskPhase(phase),
            agent_id=data.get("agentId"),
            process_id=int(process_id) if process_id is not None else None,
            command_line=data.get("commandLine"),
            run_id=data.get("runId"),
            start_timestamp=parse_timestamp(data.get("startTimestamp")),
            finish_timestamp=parse_timestamp(data.get("finishTimestamp")),
            runtime=data.get("runtime"),
            exit_code=int(exit_code) if exit_code is not None else None,
            output=data.get("output"),
            error=data.get("error"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the resource's ``status`` object, dropping unset fields."""
        data = {
            _STATUS_JSON_NAMES[name]: _serialize(getattr(self, name))
            for name in _STATUS_JSON_NAMES
        }
        return {key: value for key, value in data.items() if value is not None}


_STATUS_JSON_NAMES = {
    "phase": "phase",
    "agent_id": "agentId",
    "process_id": "processId",
    "command_line": "commandLine",
    "run_id": "runId",
    "start_timestamp": "startTimestamp",
    "finish_timestamp": "finishTimestamp",
    "runtime": "runtime",
    "exit_code": "exitCode",
    "output": "output",
    "error": "error",
}

_STATUS_TYPES: dict[str, type | tuple[type, ...]] = {
    "phase": NodeTaskPhase,
    "agent_id": str,
    "process_id": int,
    "command_line": str,
    "run_id": str,
    "start_timestamp": datetime,
    "finish_timestamp": datetime,
    "runtime": str,
    "exit_code": int,
    "output": str,
    "error": str,
}


def _serialize(value: Any) -> Any:
    if isinstance(value, NodeTaskPhase):
        return value.value
    if isinstance(value, datetime):
        return format_timestamp(value)
    return value


@dataclass
class NodeTask:
    """A NodeTask custom resource: one bash script to run on one node."""

    name: str
    spec: NodeTaskSpec = field(default_factory=NodeTaskSpec)
    status: NodeTaskStatus = field(default_factory=NodeTaskStatus)
    resource_version: str | None = None
    uid: str | None = None
    owner_references: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    status_error: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NodeTask":
        """Create a NodeTask from a custom object returned by the API server.

        A status that cannot be parsed is recorded in ``status_error`` so the
        resource can still be identified and rejected by ``validate()``.
        """
        metadata = dict(data.get("metadata") or {})
        status_error = None
        try:
            status = NodeTaskStatus.from_dict(data.get("status"))
        except (TypeError, ValueError) as e:
            status = NodeTaskStatus()
            status_error = str(e)

        return cls(
            name=metadata.get("name", ""),
            spec=NodeTaskSpec.from_dict(data.get("spec")),
            status=status,
            resource_version=metadata.get("resourceVersion"),
            uid=metadata.get("uid"),
            owner_references=list(metadata.get("ownerReferences") or []),
            metadata=metadata,
            status_error=status_error,
        )

    def to_dict(self, api_version: str, kind: str = "NodeTask") -> dict[str, Any]:
        """Convert to a full custom object body suitable for replace calls."""
        metadata = dict(self.metadata)
        metadata["name"] = self.name
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        if self.owner_references:
            metadata["ownerReferences"] = self.owner_references
        return {
            "apiVersion": api_version,
            "kind": kind,
            "metadata": metadata,
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }

    def validate(self) -> None:
        """Validate the whole resource.

        Raises:
            NodeTaskValidationError: If the spec fields or the status are malformed
        """
        self.spec.validate()
        if self.status_error:
            raise NodeTaskValidationError(f"[status]: {self.status_error}")

    def targets_node(self, node_name: str) -> bool:
        """Check if this task is assigned to ``node_name``.

        Tasks without a usable node are reported as matching so that the agent gets a
        chance to reject and remove them.
        """
        if not self.spec.node or not isinstance(self.spec.node, str):
            return True
        return self.spec.node.casefold() == node_name.casefold()


class StatusPatch:
    """Typed list of field-level replacements against a NodeTask status.

    Every mutation is checked against the status field types when it is
    added, and phase changes are checked against the current phase by
    ``validate()`` before the patch is submitted.
    """

    def __init__(self) -> None:
        """Initialize an empty patch."""
        self._mutations: list[tuple[str, Any]] = []

    @classmethod
    def reset(cls) -> "StatusPatch":
        """Create a patch that clears every status field back to its default."""
        patch = cls()
        defaults = NodeTaskStatus()
        for name in _STATUS_JSON_NAMES:
            patch.replace(name, getattr(defaults, name))
        return patch

    def replace(self, name: str, value: Any) -> "StatusPatch":
        """Replace a single status field."""
        if name not in _STATUS_TYPES:
            raise ValueError(f"Unknown NodeTask status field: {name}")
        if value is None:
            if name == "phase":
                raise ValueError("NodeTask status phase cannot be None")
        elif not isinstance(value, _STATUS_TYPES[name]) or (
            isinstance(value, bool) and _STATUS_TYPES[name] is int
        ):
            raise ValueError(
                f"NodeTask status field {name} expects {_STATUS_TYPES[name]}, "
                f"got {type(value).__name__}"
            )
        self._mutations = [(key, v) for key, v in self._mutations if key != name]
        self._mutations.append((name, value))
        return self

    @property
    def mutations(self) -> list[tuple[str, Any]]:
        """The ``(field, value)`` replacements in this patch."""
        return list(self._mutations)

    @property
    def phase(self) -> NodeTaskPhase | None:
        """The phase this patch moves the task to, if any."""
        for name, value in self._mutations:
            if name == "phase":
                return value  # type: ignore[no-any-return]
        return None

    def validate(self, current: NodeTaskPhase) -> None:
        """Reject backward phase transitions.

        Raises:
            ValueError: If the patch would move the task to an earlier phase
        """
        target = self.phase
        if target is not None and not current.can_transition_to(target):
            raise ValueError(
                f"Illegal NodeTask phase transition: {current.value} -> {target.value}"
            )

    def apply(self, status: NodeTaskStatus) -> NodeTaskStatus:
        """Return a copy of ``status`` with this patch applied."""
        return dataclasses.replace(status, **dict(self._mutations))

    def to_body(self) -> dict[str, Any]:
        """Render as a JSON merge patch; ``None`` values clear the field."""
        return {
            "status": {
                _STATUS_JSON_NAMES[name]: _serialize(value) for name, value in self._mutations
            }
        }

    def __repr__(self) -> str:
        fields = ", ".join(f"{name}={_serialize(value)!r}" for name, value in self._mutations)
        return f"StatusPatch({fields})"
