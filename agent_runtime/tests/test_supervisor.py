import logging
import signal
import threading
import time

import pytest

from agent_runtime.channels.base import Channel
from agent_runtime.channels.cli import CliChannel
from agent_runtime.channels.registry import ChannelRegistry
from agent_runtime.channels.supervisor import ChannelSupervisor
from agent_runtime.domain.exceptions import AlreadyRunning
from fakes import SettingsStub


class AgentStub:
    def __init__(self):
        self.shutdowns = 0

    def shutdown(self):
        self.shutdowns += 1
        return 0


class BlockingChannel(Channel):
    name = "blocking"
    instances = []

    def __init__(self, agent, cfg):
        super().__init__(agent, cfg)
        self._stopped = threading.Event()
        self.stop_calls = 0
        BlockingChannel.instances.append(self)

    def start(self):
        self._running.set()
        self._stopped.wait(5)
        self._running.clear()

    def stop(self):
        self.stop_calls += 1
        super().stop()
        self._stopped.set()

    def deliver_message(self, source_id, formatted):
        pass


class MisconfiguredChannel(BlockingChannel):
    name = "misconfigured"
    required_config = ("missing_token",)


class CrashingChannel(BlockingChannel):
    name = "crashing"

    def start(self):
        raise RuntimeError("boom")


class VanishingChannel(BlockingChannel):
    name = "vanishing"

    def start(self):
        # 退出线程但不清理运行标记
        self._running.set()


class RaisingStopChannel(BlockingChannel):
    name = "raising_stop"

    def stop(self):
        super().stop()
        raise RuntimeError("stop failed")


class StubbornChannel(BlockingChannel):
    name = "stubborn"
    release = threading.Event()

    def start(self):
        # 忽略 stop()，直到测试放行
        self._running.set()
        StubbornChannel.release.wait(5)
        self._running.clear()


@pytest.fixture(autouse=True)
def _reset_instances():
    BlockingChannel.instances = []


def _supervisor(*channel_classes, exit_fn=None, cfg=None):
    registry = ChannelRegistry()
    for cls in channel_classes:
        registry.register(cls)
    agent = AgentStub()
    supervisor = ChannelSupervisor(
        agent,
        registry,
        cfg or SettingsStub(),
        install_signal_handlers=False,
        exit_fn=exit_fn or (lambda code: None),
        monitor_interval=60,
    )
    return supervisor, agent


def test_misconfigured_channel_is_skipped():
    supervisor, agent = _supervisor(BlockingChannel, MisconfiguredChannel, CliChannel)
    supervisor.start_channels()
    try:
        assert supervisor.is_running()
        assert supervisor.thread_count() == 1
        assert list(supervisor.all_statuses()) == ["blocking"]
        assert supervisor.channel_status("misconfigured") == {
            "name": "misconfigured",
            "running": False,
            "thread_alive": False,
        }
    finally:
        supervisor.stop_all()
    assert agent.shutdowns == 1


def test_start_twice_raises():
    supervisor, _ = _supervisor(BlockingChannel)
    supervisor.start_channels()
    try:
        with pytest.raises(AlreadyRunning) as exc:
            supervisor.start_channels()
        assert exc.value.message == "Channels are already running"
    finally:
        supervisor.stop_all()


def test_stop_all_stops_channels_and_allows_restart():
    supervisor, _ = _supervisor(BlockingChannel)
    supervisor.start_channels()
    supervisor.stop_all()

    assert supervisor.state == "idle"
    assert supervisor.thread_count() == 0
    assert BlockingChannel.instances[0].stop_calls == 1
    assert not BlockingChannel.instances[0].is_running()

    supervisor.stop_all()
    assert BlockingChannel.instances[0].stop_calls == 1

    supervisor.start_channels()
    assert supervisor.thread_count() == 1
    supervisor.stop_all()


def _wait_thread_exit(supervisor, name, timeout=5.0):
    deadline = time.monotonic() + timeout
    while supervisor.channel_status(name)["thread_alive"] and time.monotonic() < deadline:
        time.sleep(0.05)


def test_crashing_channel_does_not_affect_others():
    supervisor, _ = _supervisor(BlockingChannel, CrashingChannel)
    supervisor.start_channels()
    try:
        _wait_thread_exit(supervisor, "crashing")
        assert supervisor.channel_status("crashing")["thread_alive"] is False
        assert supervisor.channel_status("blocking")["thread_alive"] is True
        assert supervisor.is_running()
    finally:
        supervisor.stop_all()


def test_reclaims_dead_thread_that_claims_running():
    supervisor, _ = _supervisor(BlockingChannel, VanishingChannel)
    supervisor.start_channels()
    try:
        _wait_thread_exit(supervisor, "vanishing")
        assert supervisor.reclaim_dead_threads() == 1
        assert list(supervisor.all_statuses()) == ["blocking"]
        assert supervisor.reclaim_dead_threads() == 0
    finally:
        supervisor.stop_all()


def test_signal_triggers_shutdown_and_exit():
    exited = threading.Event()
    codes = []

    def exit_fn(code):
        codes.append(code)
        exited.set()

    supervisor, agent = _supervisor(BlockingChannel, exit_fn=exit_fn)
    supervisor.start_channels()
    supervisor._handle_signal(signal.SIGTERM, None)

    assert exited.wait(5)
    assert codes == [0]
    assert supervisor.state == "idle"
    assert agent.shutdowns == 1


def test_stop_error_does_not_prevent_stopping_others():
    supervisor, agent = _supervisor(RaisingStopChannel, BlockingChannel)
    supervisor.start_channels()
    supervisor.stop_all()

    raising, blocking = BlockingChannel.instances
    assert raising.stop_calls == 1
    assert blocking.stop_calls == 1
    assert supervisor.state == "idle"
    assert supervisor.thread_count() == 0
    assert agent.shutdowns == 1


def test_thread_outliving_timeout_is_abandoned(caplog):
    cfg = SettingsStub()
    cfg.shutdown_timeout = 0.2
    StubbornChannel.release.clear()
    supervisor, _ = _supervisor(StubbornChannel, BlockingChannel, cfg=cfg)
    supervisor.start_channels()
    try:
        with caplog.at_level(logging.WARNING, logger="agent_runtime"):
            supervisor.stop_all()

        assert supervisor.state == "idle"
        assert supervisor.thread_count() == 0
        assert supervisor.all_statuses() == {}
        assert BlockingChannel.instances[1].stop_calls == 1
        assert "Channel thread did not stop in time, abandoning" in caplog.messages
    finally:
        StubbornChannel.release.set()
