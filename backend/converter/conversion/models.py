"""Conversion task records and value types."""
import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Mapping, Optional


class TaskState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})

# Allowed edges of the task state machine
TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.PROCESSING, TaskState.CANCELLED}),
    TaskState.PROCESSING: frozenset({
        TaskState.PROCESSING,
        TaskState.COMPLETED,
        TaskState.FAILED,
        TaskState.CANCELLED,
    }),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.CANCELLED: frozenset(),
}


class InputMethod(str, Enum):
    UPLOAD = "upload"
    URL = "url"


class EngineKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


# API option keys -> ConversionOptions attribute
OPTION_FIELDS = {
    "videoQuality": "video_quality",
    "resolution": "resolution",
    "framerate": "framerate",
}


@dataclass(frozen=True)
class ConversionOptions:
    """Validated option snapshot stored on a task. Values are normalised strings."""

    video_quality: Optional[str] = None
    resolution: Optional[str] = None
    framerate: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {key: getattr(self, attr) for key, attr in OPTION_FIELDS.items()}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ConversionOptions":
        data = data or {}
        return cls(**{attr: data.get(key) for key, attr in OPTION_FIELDS.items()})


@dataclass(frozen=True)
class TaskSpec:
    """Validated input for TaskStore.create."""

    input_method: InputMethod
    input_location: str
    filename: str
    input_format: str
    output_format: str
    options: ConversionOptions
    engine: str
    user_id: Optional[str] = None
    file_size: Optional[int] = None
    tag: Optional[str] = None
    callback_url: Optional[str] = None
    retry_of: Optional[str] = None


@dataclass
class ConversionTask:
    id: str
    input_method: InputMethod
    input_location: str
    filename: str
    input_format: str
    output_format: str
    options: ConversionOptions
    engine: str
    state: TaskState
    created_at: str
    updated_at: str
    user_id: Optional[str] = None
    file_size: Optional[int] = None
    version: int = 0
    attempts: int = 0
    progress: int = 0
    output_location: Optional[str] = None
    output_size: Optional[int] = None
    duration_seconds: Optional[float] = None
    error_class: Optional[str] = None
    error_message: Optional[str] = None
    retry_of: Optional[str] = None
    tag: Optional[str] = None
    callback_url: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def output(self) -> Optional[dict]:
        if self.state != TaskState.COMPLETED:
            return None
        return {
            "location": self.output_location,
            "size": self.output_size,
            "duration_seconds": self.duration_seconds,
        }

    @property
    def failure(self) -> Optional[dict]:
        if self.state != TaskState.FAILED:
            return None
        return {
            "classification": self.error_class,
            "message": self.error_message,
            "attempts": self.attempts,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ConversionTask":
        data = dict(row)
        options = json.loads(data.pop("options_json") or "{}")
        return cls(
            options=ConversionOptions.from_dict(options),
            input_method=InputMethod(data.pop("input_method")),
            state=TaskState(data.pop("state")),
            **data,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["options"] = self.options.to_dict()
        data["input_method"] = self.input_method.value
        data["state"] = self.state.value
        return data


@dataclass
class QueueMessage:
    id: int
    task_id: str
    claimed_by: Optional[str] = None
    claimed_at: Optional[float] = None
