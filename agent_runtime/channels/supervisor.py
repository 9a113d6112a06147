"""ChannelSupervisor：并发运行多个通道，隔离故障并负责优雅关闭。

- 每个通道一个线程，外加一个监控线程回收意外退出的通道线程。
- 通道构造时缺少配置（ConfigurationError）只记录日志并跳过。
- 信号处理器只负责启动一个关闭线程，真正的 stop_all 在该线程中执行。
"""

import logging
import os
import signal
import threading
import time
from typing import Any, Callable, Dict, Optional

from agent_runtime.agents.agent import Agent
from agent_runtime.config.settings import settings as default_settings
from agent_runtime.domain.exceptions import AlreadyRunning, ConfigurationError, ThreadCrash
from agent_runtime.infrastructure.logging.logger import logger
from .base import Channel
from .registry import ChannelRegistry

EXCLUDED_CHANNELS = ("cli",)
MONITOR_INTERVAL = 1.0
WAIT_POLL_INTERVAL = 0.1
THREAD_PREFIX = "agent-runtime"


def _exit_process(code: int) -> None:
    logging.shutdown()
    os._exit(code)


class ChannelSupervisor:
    def __init__(
        self,
        agent: Agent,
        registry: ChannelRegistry,
        cfg=default_settings,
        install_signal_handlers: bool = True,
        exit_fn: Callable[[int], None] = _exit_process,
        monitor_interval: float = MONITOR_INTERVAL,
    ):
        self._agent = agent
        self._registry = registry
        self._settings = cfg
        self._shutdown_timeout = float(getattr(cfg, "shutdown_timeout", 5.0))
        self._install_signal_handlers = install_signal_handlers
        self._exit_fn = exit_fn
        self._monitor_interval = monitor_interval

        self._lock = threading.RLock()
        self._state = "idle"
        self._threads: Dict[str, threading.Thread] = {}
        self._instances: Dict[str, Channel] = {}
        self._monitor_thread: Optional[threading.Thread] = None
        self._monitor_stop = threading.Event()
        self._previous_handlers: Dict[int, Any] = {}

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    # ---- 启动 ----

    def start_channels(self) -> "ChannelSupervisor":
        with self._lock:
            if self._state != "idle":
                raise AlreadyRunning.of("Channels are already running")
            self._state = "running"
            self._monitor_stop.clear()

            for name, channel_cls in self._registry.items():
                if name in EXCLUDED_CHANNELS:
                    continue
                instance = self._build(name, channel_cls)
                if instance is None:
                    continue
                self._instances[name] = instance
                thread = threading.Thread(
                    target=self._run_channel,
                    args=(name, instance),
                    name=f"{THREAD_PREFIX}-{name}",
                    daemon=True,
                )
                self._threads[name] = thread
                thread.start()
                self._log(logging.INFO, "Channel started", channel=name)

            self._monitor_thread = threading.Thread(
                target=self._monitor, name=f"{THREAD_PREFIX}-monitor", daemon=True
            )
            self._monitor_thread.start()

        if self._install_signal_handlers:
            self._install_handlers()
        self._log(logging.INFO, "Channels running", channels=list(self._instances))
        return self

    def _build(self, name: str, channel_cls: type) -> Optional[Channel]:
        try:
            return channel_cls(self._agent, self._settings)
        except ConfigurationError as e:
            self._log(logging.WARNING, "Skipping channel", channel=name, error=e.message)
        except Exception:
            logger.exception("Channel construction failed", extra={"extra": {"channel": name}})
        return None

    def _run_channel(self, name: str, instance: Channel) -> None:
        try:
            instance.start()
        except Exception as e:
            logger.exception(
                "Channel thread crashed",
                extra={"extra": {"channel": name, "code": ThreadCrash.default_code, "error": str(e)}},
            )

    def _monitor(self) -> None:
        while not self._monitor_stop.wait(self._monitor_interval):
            self.reclaim_dead_threads()

    def reclaim_dead_threads(self) -> int:
        """回收已退出但实例仍声称在运行的通道线程。"""
        reclaimed = 0
        with self._lock:
            if self._state != "running":
                return 0
            for name, thread in list(self._threads.items()):
                if thread.is_alive():
                    continue
                instance = self._instances.get(name)
                if instance is not None and instance.is_running():
                    self._log(logging.ERROR, "Reclaiming dead channel thread", channel=name)
                    self._threads.pop(name, None)
                    self._instances.pop(name, None)
                    reclaimed += 1
        return reclaimed

    # ---- 关闭 ----

    def stop_all(self) -> None:
        with self._lock:
            if self._state != "running":
                return
            self._state = "stopping"
            instances = dict(self._instances)
            threads = dict(self._threads)
        self._monitor_stop.set()
        self._log(logging.INFO, "Stopping channels", channels=list(instances))

        for name, instance in instances.items():
            try:
                instance.stop()
            except Exception:
                logger.exception("Error stopping channel", extra={"extra": {"channel": name}})

        for name, thread in threads.items():
            thread.join(self._shutdown_timeout)
            if thread.is_alive():
                # daemon 线程无法安全强杀，放弃等待并随进程退出
                self._log(
                    logging.WARNING,
                    "Channel thread did not stop in time, abandoning",
                    channel=name,
                    timeout=self._shutdown_timeout,
                )

        monitor = self._monitor_thread
        if monitor is not None and monitor is not threading.current_thread():
            monitor.join(self._shutdown_timeout)
        interrupted = self._agent.shutdown()

        with self._lock:
            self._threads.clear()
            self._instances.clear()
            self._monitor_thread = None
            self._state = "idle"
        self._log(logging.INFO, "All channels stopped", interrupted_runs=interrupted)

    # ---- 信号 ----

    def _install_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            self._log(logging.WARNING, "Not in main thread, signal handlers not installed")
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum: int, frame: Any) -> None:
        threading.Thread(
            target=self._shutdown_from_signal,
            args=(signum, frame),
            name=f"{THREAD_PREFIX}-shutdown",
            daemon=True,
        ).start()

    def _shutdown_from_signal(self, signum: int, frame: Any) -> None:
        self._log(logging.INFO, "Shutdown signal received", signal=signum)
        self.stop_all()
        previous = self._previous_handlers.get(signum)
        if callable(previous) and previous is not signal.default_int_handler:
            try:
                previous(signum, frame)
            except Exception:
                logger.exception("Previous signal handler failed", extra={"extra": {"signal": signum}})
        self._exit_fn(0)

    # ---- 状态 ----

    def is_running(self) -> bool:
        return self.state == "running"

    def thread_count(self) -> int:
        with self._lock:
            return sum(1 for t in self._threads.values() if t.is_alive())

    def channel_status(self, name: str) -> Dict[str, Any]:
        with self._lock:
            instance = self._instances.get(name)
            thread = self._threads.get(name)
        return {
            "name": name,
            "running": bool(instance is not None and instance.is_running()),
            "thread_alive": bool(thread is not None and thread.is_alive()),
        }

    def all_statuses(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            names = list(self._instances)
        return {name: self.channel_status(name) for name in names}

    def wait(self) -> None:
        """阻塞直到没有存活的通道线程。"""
        while self.thread_count() > 0:
            time.sleep(WAIT_POLL_INTERVAL)

    @staticmethod
    def _log(level: int, message: str, **fields: Any) -> None:
        logger.log(level, message, extra={"extra": fields})
