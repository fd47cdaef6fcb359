"""Message protocol between the coordinator and a background nesting worker.

The worker receives NEST and CANCEL and answers with READY, PROGRESS,
RESULT and ERROR. On the wire every message is a plain dictionary
``{"type": ..., "payload": ...}`` with camelCase payload keys; those field
names are the whole contract an external optimizer backend has to speak.

For one job, zero or more PROGRESS messages (non-decreasing iteration) are
followed by exactly one RESULT or ERROR.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, List, Mapping, Union

from src.nesting.exceptions import ProtocolError
from src.nesting.models import NestingConfig, NestingResult, Part, Placement, Sheet


class MessageType(str, Enum):
    """Wire message types."""
    NEST = "NEST"
    CANCEL = "CANCEL"
    READY = "READY"
    PROGRESS = "PROGRESS"
    RESULT = "RESULT"
    ERROR = "ERROR"


class ErrorCode(str, Enum):
    """Error codes carried by ERROR messages."""
    WASM_LOAD_FAILED = "WASM_LOAD_FAILED"
    NESTING_FAILED = "NESTING_FAILED"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


class Algorithm(str, Enum):
    """Algorithm that produced a RESULT."""
    ADVANCED = "wasm"
    SHELF_PACK = "shelf-pack"


@dataclass
class NestRequestPayload:
    """Everything a worker needs to run one job."""
    sheet: Sheet
    parts: List[Part]
    config: NestingConfig

    def to_dict(self) -> dict:
        return {
            "sheet": self.sheet.to_dict(),
            "parts": [p.to_dict() for p in self.parts],
            "config": self.config.to_wire(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NestRequestPayload":
        return cls(
            sheet=Sheet.from_dict(data["sheet"]),
            parts=[Part.from_dict(p) for p in data.get("parts", [])],
            config=NestingConfig.resolve(data.get("config") or {}),
        )


@dataclass
class NestResultPayload:
    """Final layout reported by a worker."""
    placements: List[Placement] = field(default_factory=list)
    sheets_used: int = 0
    utilization: List[float] = field(default_factory=list)
    iterations_run: int = 0
    algorithm: Algorithm = Algorithm.ADVANCED

    def to_result(self) -> NestingResult:
        """Drop the diagnostics and keep the NestingResult shape."""
        return NestingResult(
            placements=list(self.placements),
            sheets_used=self.sheets_used,
            utilization=list(self.utilization),
        )

    def to_dict(self) -> dict:
        return {
            "placements": [p.to_dict() for p in self.placements],
            "sheetsUsed": self.sheets_used,
            "utilization": list(self.utilization),
            "iterationsRun": self.iterations_run,
            "algorithm": self.algorithm.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NestResultPayload":
        return cls(
            placements=[Placement.from_dict(p) for p in data.get("placements", [])],
            sheets_used=int(data["sheetsUsed"]),
            utilization=[float(u) for u in data.get("utilization", [])],
            iterations_run=int(data.get("iterationsRun", 0)),
            algorithm=Algorithm(data.get("algorithm", Algorithm.ADVANCED.value)),
        )


@dataclass
class NestMessage:
    type: ClassVar[MessageType] = MessageType.NEST
    payload: NestRequestPayload

    def to_dict(self) -> dict:
        return {"type": self.type.value, "payload": self.payload.to_dict()}


@dataclass
class CancelMessage:
    type: ClassVar[MessageType] = MessageType.CANCEL

    def to_dict(self) -> dict:
        return {"type": self.type.value}


@dataclass
class ReadyMessage:
    type: ClassVar[MessageType] = MessageType.READY
    advanced_available: bool

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "payload": {
                "wasmAvailable": self.advanced_available,
                "advancedAvailable": self.advanced_available,
            },
        }


@dataclass
class ProgressMessage:
    type: ClassVar[MessageType] = MessageType.PROGRESS
    iteration: int
    total_iterations: int
    current_utilization: float

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "payload": {
                "iteration": self.iteration,
                "totalIterations": self.total_iterations,
                "currentUtilization": self.current_utilization,
            },
        }


@dataclass
class ResultMessage:
    type: ClassVar[MessageType] = MessageType.RESULT
    payload: NestResultPayload

    def to_dict(self) -> dict:
        return {"type": self.type.value, "payload": self.payload.to_dict()}


@dataclass
class ErrorMessage:
    type: ClassVar[MessageType] = MessageType.ERROR
    message: str
    code: ErrorCode = ErrorCode.UNKNOWN

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "payload": {"message": self.message, "code": self.code.value},
        }


WorkerInputMessage = Union[NestMessage, CancelMessage]
WorkerOutputMessage = Union[ReadyMessage, ProgressMessage, ResultMessage, ErrorMessage]
Message = Union[WorkerInputMessage, WorkerOutputMessage]

TERMINAL_TYPES = (MessageType.RESULT, MessageType.ERROR)


def _parse_ready(payload: Mapping[str, Any]) -> ReadyMessage:
    if "advancedAvailable" in payload:
        return ReadyMessage(advanced_available=bool(payload["advancedAvailable"]))
    return ReadyMessage(advanced_available=bool(payload["wasmAvailable"]))


def _parse_progress(payload: Mapping[str, Any]) -> ProgressMessage:
    return ProgressMessage(
        iteration=int(payload["iteration"]),
        total_iterations=int(payload["totalIterations"]),
        current_utilization=float(payload["currentUtilization"]),
    )


def _parse_error(payload: Mapping[str, Any]) -> ErrorMessage:
    try:
        code = ErrorCode(payload.get("code", ErrorCode.UNKNOWN.value))
    except ValueError:
        code = ErrorCode.UNKNOWN
    return ErrorMessage(message=str(payload.get("message", "")), code=code)


def parse_message(data: Mapping[str, Any]) -> Message:
    """Decode a wire dictionary into a typed message.

    Raises:
        ProtocolError: If the type is unknown or the payload is malformed.
    """
    if not isinstance(data, Mapping):
        raise ProtocolError(f"Message must be a mapping, got {type(data).__name__}")
    try:
        message_type = MessageType(data.get("type"))
    except ValueError:
        raise ProtocolError(f"Unknown message type: {data.get('type')!r}")

    payload = data.get("payload") or {}
    try:
        if message_type == MessageType.NEST:
            return NestMessage(NestRequestPayload.from_dict(payload))
        if message_type == MessageType.CANCEL:
            return CancelMessage()
        if message_type == MessageType.READY:
            return _parse_ready(payload)
        if message_type == MessageType.PROGRESS:
            return _parse_progress(payload)
        if message_type == MessageType.RESULT:
            return ResultMessage(NestResultPayload.from_dict(payload))
        return _parse_error(payload)
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed {message_type.value} message: {e}") from e


def is_terminal(message: Message) -> bool:
    """Whether a message ends a job."""
    return message.type in TERMINAL_TYPES
