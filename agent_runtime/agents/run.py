"""Run：在后台线程中执行一次 LoopEngine 调用，可被中断。

状态只允许 running→completed 或 running→interrupted，且只迁移一次；
迁移由锁保护，自然结束与中断并发时只有一方生效。
中断通过取消信号在安全点（模型调用与工具执行之前）生效；
线程为 daemon，阻塞中的外部调用由各自的超时兜底，
被中断的 Run 不会再触发成功或错误回调。
"""

import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from agent_runtime.domain.conversation import Conversation
from agent_runtime.domain.exceptions import BusinessError
from agent_runtime.infrastructure.logging.logger import logger
from .loop_engine import LoopEngine, VerboseCallback

TextCallback = Callable[[str], None]
CompletionCallback = Callable[[], None]

LOCK_POLL_INTERVAL = 0.1


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


class RunTracker:
    """活跃 Run 集合（线程安全）。"""

    def __init__(self):
        self._runs: Dict[str, "Run"] = {}
        self._lock = threading.Lock()

    def add(self, run: "Run") -> None:
        with self._lock:
            self._runs[run.id] = run

    def discard(self, run: "Run") -> None:
        with self._lock:
            self._runs.pop(run.id, None)

    def snapshot(self) -> List["Run"]:
        with self._lock:
            return list(self._runs.values())

    def for_conversation(self, conversation_id: str) -> List["Run"]:
        return [r for r in self.snapshot() if r.conversation.id == conversation_id]

    def interrupt_all(self) -> int:
        runs = self.snapshot()
        for run in runs:
            run.interrupt()
        return len(runs)

    def __contains__(self, run: object) -> bool:
        with self._lock:
            return isinstance(run, Run) and run.id in self._runs

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)


class Run:
    def __init__(
        self,
        engine: LoopEngine,
        conversation: Conversation,
        user_input: str,
        callback: Optional[TextCallback] = None,
        error_callback: Optional[TextCallback] = None,
        completion_callback: Optional[CompletionCallback] = None,
        verbose_callback: Optional[VerboseCallback] = None,
        tracker: Optional[RunTracker] = None,
        conversation_lock: Optional[threading.Lock] = None,
        max_iterations: Optional[int] = None,
    ):
        self.id = str(uuid4())
        self.conversation = conversation
        self._engine = engine
        self._user_input = user_input
        self._callback = callback
        self._error_callback = error_callback
        self._completion_callback = completion_callback
        self._verbose_callback = verbose_callback
        self._tracker = tracker
        self._conversation_lock = conversation_lock
        self._max_iterations = max_iterations

        self._status = RunStatus.RUNNING
        self._mutex = threading.Lock()
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def status(self) -> RunStatus:
        with self._mutex:
            return self._status

    @property
    def is_running(self) -> bool:
        return self.status == RunStatus.RUNNING

    def start(self) -> "Run":
        """在新线程中启动循环并立即返回。"""
        if self._tracker is not None:
            self._tracker.add(self)
        self._thread = threading.Thread(
            target=self._execute,
            name=f"run-{self.id[:8]}",
            daemon=True,
        )
        self._thread.start()
        return self

    def interrupt(self) -> bool:
        """中断运行；已处于终态时为空操作，返回是否真正发生了中断。"""
        with self._mutex:
            if self._status != RunStatus.RUNNING:
                return False
            self._status = RunStatus.INTERRUPTED
            self._cancel.set()
        if self._tracker is not None:
            self._tracker.discard(self)
        self._log(logging.INFO, "Run interrupted")
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """阻塞直到线程结束，返回线程是否已结束。"""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    # ---- 线程主体 ----

    def _execute(self) -> None:
        acquired = False
        try:
            acquired = self._acquire_conversation()
            if not acquired:
                return
            outcome = self._engine.run(
                self.conversation,
                self._user_input,
                self._max_iterations,
                cancel_event=self._cancel,
                verbose_callback=self._verbose_callback,
            )
            if outcome.kind == "final":
                if self._finish():
                    self._fire(self._callback, outcome.content)
            elif outcome.kind == "max_iterations":
                if self._finish():
                    self._fire(self._error_callback, outcome.message)
        except BusinessError as e:
            self._log(logging.ERROR, "Run failed", error=e.message, code=e.code)
            if self._finish():
                self._fire(self._error_callback, e.message)
        except Exception as e:
            logger.exception("Run crashed", extra={"extra": self._log_ctx()})
            if self._finish():
                self._fire(self._error_callback, str(e) or e.__class__.__name__)
        finally:
            if acquired and self._conversation_lock is not None:
                self._conversation_lock.release()
            # 无论成功、失败还是中断，都要在已完成的状态上收尾
            self._finish()
            if self._tracker is not None:
                self._tracker.discard(self)
            if self._completion_callback is not None:
                try:
                    self._completion_callback()
                except Exception:
                    logger.exception("Completion callback failed", extra={"extra": self._log_ctx()})

    def _acquire_conversation(self) -> bool:
        """等待同一会话上的前一轮结束；等待期间响应中断。"""
        if self._conversation_lock is None:
            return True
        while not self._conversation_lock.acquire(timeout=LOCK_POLL_INTERVAL):
            if self._cancel.is_set():
                return False
        if self._cancel.is_set():
            self._conversation_lock.release()
            return False
        return True

    def _finish(self) -> bool:
        """running→completed；已是终态（例如被中断）时返回 False。"""
        with self._mutex:
            if self._status != RunStatus.RUNNING:
                return False
            self._status = RunStatus.COMPLETED
            return True

    def _fire(self, callback: Optional[TextCallback], text: str) -> None:
        if callback is None:
            return
        try:
            callback(text)
        except Exception:
            logger.exception("Run callback failed", extra={"extra": self._log_ctx()})

    def _log_ctx(self) -> Dict[str, Any]:
        return {"run_id": self.id, "conversation_id": self.conversation.id}

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload = self._log_ctx()
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
