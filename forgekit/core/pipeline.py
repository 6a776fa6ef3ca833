"""Deployment step state machine.

The pipeline knows nothing about output. Listeners (the CLI progress
reporter, tests) subscribe to :class:`StepEvent` notifications.
"""
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional


class StepName(str, Enum):
    AUTHENTICATE = "authenticate"
    PREPARE = "prepare"
    BUILD = "build"
    BUNDLE = "bundle"
    UPLOAD = "upload"
    PROCESS = "process"


class StepState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class EventKind(str, Enum):
    STARTED = "started"
    UPDATED = "updated"
    COMPLETED = "completed"
    FAILED = "failed"
    LOG = "log"
    FINISHED = "finished"


@dataclass(frozen=True)
class StepDefinition:
    name: StepName
    icon: str
    message: str
    details: str


STEP_DEFINITIONS = [
    StepDefinition(StepName.AUTHENTICATE, "🔐", "Authenticating",
                   "Verifying stored credentials and login status"),
    StepDefinition(StepName.PREPARE, "⚙️", "Preparing deployment",
                   "Reading configuration and detecting build directory"),
    StepDefinition(StepName.BUILD, "🏗️", "Building project",
                   "Running build command to generate production assets"),
    StepDefinition(StepName.BUNDLE, "📦", "Creating bundle",
                   "Compressing build output into deployment archive"),
    StepDefinition(StepName.UPLOAD, "🚀", "Uploading to ForgeKit",
                   "Securely transferring bundle to deployment servers"),
    StepDefinition(StepName.PROCESS, "🔄", "Processing deployment",
                   "Server is building and starting your application"),
]


@dataclass(frozen=True)
class StepEvent:
    """One pipeline notification.

    ``step`` and ``index`` (1-based) are None for pipeline-level events.
    ``level`` applies to LOG events: "verbose", "info" or "warning".
    """

    kind: EventKind
    total: int
    step: Optional[StepDefinition] = None
    index: Optional[int] = None
    message: Optional[str] = None
    level: str = "info"
    elapsed: Optional[float] = None


class PipelineStateError(RuntimeError):
    """A transition was requested out of order."""


Listener = Callable[[StepEvent], None]


class DeploymentPipeline:
    """Ordered step sequence with pending/active/completed/failed states.

    Steps run strictly in order. A failed step halts the sequence and every
    later step stays pending.
    """

    def __init__(self, skip_build: bool = False, clock: Callable[[], float] = time.monotonic):
        self.steps: List[StepDefinition] = [
            step for step in STEP_DEFINITIONS
            if not (skip_build and step.name is StepName.BUILD)
        ]
        self.states: Dict[StepName, StepState] = {step.name: StepState.PENDING for step in self.steps}
        self.listeners: List[Listener] = []
        self.clock = clock
        self.started_at = clock()
        self.active: Optional[StepName] = None

    @property
    def total(self) -> int:
        return len(self.steps)

    @property
    def failed(self) -> bool:
        return StepState.FAILED in self.states.values()

    def has_step(self, name: StepName) -> bool:
        return name in self.states

    def subscribe(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def _emit(self, event: StepEvent) -> None:
        for listener in self.listeners:
            listener(event)

    def _locate(self, name: StepName):
        for position, step in enumerate(self.steps):
            if step.name is name:
                return position, step
        raise PipelineStateError(f"Step '{name.value}' is not part of this pipeline")

    def _event(self, kind: EventKind, name: StepName, message: Optional[str] = None) -> StepEvent:
        position, step = self._locate(name)
        return StepEvent(kind=kind, total=self.total, step=step, index=position + 1, message=message)

    def next_step(self) -> Optional[StepName]:
        """First step still pending, or None when the run is over."""
        if self.failed:
            return None
        for step in self.steps:
            if self.states[step.name] is StepState.PENDING:
                return step.name
        return None

    def start(self, name: StepName) -> None:
        """Activate ``name``; it must be the next pending step."""
        if self.active is not None:
            raise PipelineStateError(f"Step '{self.active.value}' is still active")
        expected = self.next_step()
        if name is not expected:
            raise PipelineStateError(
                f"Cannot start '{name.value}'; next step is "
                f"{repr(expected.value) if expected else 'none'}"
            )
        self.states[name] = StepState.ACTIVE
        self.active = name
        self._emit(self._event(EventKind.STARTED, name))

    def update(self, message: str) -> None:
        """Report progress detail for the active step."""
        if self.active is None:
            raise PipelineStateError("No active step to update")
        self._emit(self._event(EventKind.UPDATED, self.active, message))

    def complete(self, name: StepName, message: Optional[str] = None) -> None:
        self._finish_step(name, StepState.COMPLETED, EventKind.COMPLETED, message)

    def fail(self, name: StepName, error: str) -> None:
        self._finish_step(name, StepState.FAILED, EventKind.FAILED, error)

    def _finish_step(self, name: StepName, state: StepState, kind: EventKind, message: Optional[str]) -> None:
        if self.active is not name:
            raise PipelineStateError(f"Step '{name.value}' is not active")
        self.states[name] = state
        self.active = None
        self._emit(self._event(kind, name, message))

    def log(self, message: str, level: str = "verbose") -> None:
        """Free-form message attached to the current position in the run."""
        self._emit(StepEvent(kind=EventKind.LOG, total=self.total, message=message, level=level))

    def finish(self) -> None:
        """Announce that every step completed."""
        if self.next_step() is not None or self.active is not None or self.failed:
            raise PipelineStateError("Pipeline has not completed every step")
        self._emit(StepEvent(
            kind=EventKind.FINISHED,
            total=self.total,
            elapsed=self.clock() - self.started_at,
        ))
