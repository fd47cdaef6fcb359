"""Background nesting worker.

Runs an advanced optimizer on its own thread and talks to the coordinator only
through protocol messages: wire dictionaries go in through :meth:`send` and
come out through the ``post`` callback given at construction.

CANCEL carries no job identity, so the worker numbers NEST messages as they
arrive and a CANCEL applies to every job received before it.
"""

import queue
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from src.nesting.exceptions import OptimizerError, ProtocolError
from src.nesting.optimizer import NestingOptimizer, load_optimizer
from src.nesting.protocol import (
    Algorithm,
    ErrorCode,
    ErrorMessage,
    MessageType,
    NestMessage,
    NestResultPayload,
    ProgressMessage,
    ReadyMessage,
    ResultMessage,
    parse_message,
)
from src.nesting.shelf_packer import shelf_pack
from src.utils import get_logger

logger = get_logger("nesting.worker")

PostCallback = Callable[[Dict[str, Any]], None]
OptimizerFactory = Callable[[], NestingOptimizer]


class NestingWorker:
    """Thread that owns the optimizer and processes one job at a time."""

    def __init__(
        self,
        post: PostCallback,
        optimizer_factory: Optional[OptimizerFactory] = None,
    ):
        self._post = post
        self._optimizer_factory = optimizer_factory or (lambda: load_optimizer("genetic"))
        self._optimizer: Optional[NestingOptimizer] = None

        self._inbox: "queue.Queue[Optional[Tuple[int, Mapping[str, Any]]]]" = queue.Queue()
        self._lock = threading.Lock()
        self._received = 0
        self._cancelled_upto = 0
        self._thread: Optional[threading.Thread] = None

        self.advanced_available = False

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker thread; it answers with READY once loaded."""
        if self.is_running:
            return
        self._thread = threading.Thread(target=self._run, name="nesting-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel outstanding jobs and wait for the thread to exit."""
        if self._thread is None:
            return
        with self._lock:
            self._cancelled_upto = self._received
        self._inbox.put(None)
        self._thread.join(timeout)
        self._thread = None

    def send(self, data: Mapping[str, Any]) -> None:
        """Deliver one wire message to the worker."""
        message_type = data.get("type") if isinstance(data, Mapping) else None
        with self._lock:
            if message_type == MessageType.CANCEL.value:
                self._cancelled_upto = self._received
                return
            self._received += 1
            seq = self._received
        self._inbox.put((seq, data))

    def _is_cancelled(self, seq: int) -> bool:
        with self._lock:
            return seq <= self._cancelled_upto

    def _emit(self, message) -> None:
        self._post(message.to_dict())

    def _load(self) -> None:
        try:
            self._optimizer = self._optimizer_factory()
            self.advanced_available = True
            logger.info(f"Nesting optimizer loaded: {self._optimizer.name}")
        except Exception as e:
            self._optimizer = None
            self.advanced_available = False
            logger.warning(f"Advanced optimizer not available, using shelf packer: {e}")
        self._emit(ReadyMessage(advanced_available=self.advanced_available))

    def _run(self) -> None:
        self._load()
        while True:
            item = self._inbox.get()
            if item is None:
                break
            seq, data = item
            self._handle(seq, data)

    def _handle(self, seq: int, data: Mapping[str, Any]) -> None:
        try:
            message = parse_message(data)
        except ProtocolError as e:
            logger.error(f"Rejected worker message: {e}")
            self._emit(ErrorMessage(message=str(e), code=ErrorCode.NESTING_FAILED))
            return

        if not isinstance(message, NestMessage):
            self._emit(
                ErrorMessage(
                    message=f"Unexpected {message.type.value} message",
                    code=ErrorCode.UNKNOWN,
                )
            )
            return

        def is_cancelled() -> bool:
            return self._is_cancelled(seq)

        def progress(iteration: int, total: int, utilization: float) -> None:
            if not is_cancelled():
                self._emit(ProgressMessage(iteration, total, utilization))

        try:
            result = self._nest(message, progress, is_cancelled)
        except Exception as e:
            logger.error(f"Nesting job {seq} failed: {e}")
            self._emit(ErrorMessage(message=str(e), code=ErrorCode.NESTING_FAILED))
            return

        if is_cancelled():
            self._emit(ErrorMessage(message="Nesting cancelled", code=ErrorCode.CANCELLED))
        else:
            self._emit(ResultMessage(result))

    def _nest(self, message: NestMessage, progress, is_cancelled) -> NestResultPayload:
        request = message.payload
        if self._optimizer is not None:
            result = self._optimizer.nest(request, progress, is_cancelled)
            if not isinstance(result, NestResultPayload):
                raise OptimizerError(
                    f"Optimizer returned {type(result).__name__}, expected NestResultPayload"
                )
            return result

        # No optimizer loaded: answer with the shelf packer
        packed = shelf_pack(request.parts, request.sheet, request.config.spacing)
        return NestResultPayload(
            placements=packed.placements,
            sheets_used=packed.sheets_used,
            utilization=packed.utilization,
            iterations_run=0,
            algorithm=Algorithm.SHELF_PACK,
        )
