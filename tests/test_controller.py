import asyncio
import socket

import pytest

from conftest import FakeMaster
from mitm_sieve.core.controller import ProxyController, probe_bind
from mitm_sieve.core.store import StateStore
from mitm_sieve.errors import BindError, ListImportError, PolicyUpdateError
from mitm_sieve.models import (
    AddEntry,
    Decision,
    FilterMode,
    ListName,
    LogLevel,
    ProxyState,
    SetMode,
)


def test_starts_with_defaults_when_state_is_absent(controller):
    assert controller.state is ProxyState.STOPPED
    assert controller.policy.mode is FilterMode.DISABLED
    assert controller.settings.port == 8080
    assert controller.settings.bind_address == "127.0.0.1"


def test_corrupt_state_falls_back_to_defaults(state_path, fake_masters):
    state_path.write_text("{definitely not json")
    controller = ProxyController(StateStore(state_path), master_factory=FakeMaster)
    assert controller.policy.mode is FilterMode.DISABLED
    errors = controller.query_events(LogLevel.ERROR)
    assert any(e.cause == "persistence" for e in errors)


@pytest.mark.asyncio
async def test_start_and_stop(controller, free_port, fake_masters):
    controller.set_port(free_port)
    status = await controller.start()
    assert status.state is ProxyState.RUNNING
    assert controller.running
    (master,) = fake_masters
    assert master.settings.port == free_port
    assert controller.interceptor in master.addons

    status = await controller.stop()
    assert status.state is ProxyState.STOPPED
    assert master.shutdown_called
    assert controller.proxy_task is None


@pytest.mark.asyncio
async def test_start_twice_is_a_noop(controller, free_port, fake_masters):
    controller.set_port(free_port)
    await controller.start()
    await controller.start()
    assert len(fake_masters) == 1
    await controller.stop()


@pytest.mark.asyncio
async def test_restart_after_stop(controller, free_port, fake_masters):
    controller.set_port(free_port)
    await controller.start()
    await controller.stop()
    status = await controller.start()
    assert status.state is ProxyState.RUNNING
    assert len(fake_masters) == 2
    assert not controller.interceptor.draining
    await controller.stop()


@pytest.mark.asyncio
async def test_bind_failure_returns_to_stopped(controller, fake_masters):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen()
        controller.set_port(busy.getsockname()[1])

        with pytest.raises(BindError):
            await controller.start()

    assert controller.state is ProxyState.STOPPED
    assert controller.error
    assert fake_masters == []
    assert any(e.cause == "bind" for e in controller.query_events(LogLevel.ERROR))


@pytest.mark.asyncio
async def test_master_exiting_during_startup_is_a_bind_error(store, free_port):
    class ExitingMaster(FakeMaster):
        async def run(self):
            raise OSError("address already in use")

    controller = ProxyController(store, master_factory=ExitingMaster)
    controller.set_port(free_port)
    with pytest.raises(BindError):
        await controller.start()
    assert controller.state is ProxyState.STOPPED


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_then_gives_up(controller, free_port):
    controller.update_settings(port=free_port, grace_period=0.1)
    await controller.start()
    controller.interceptor._in_flight.add("stuck-flow")

    status = await asyncio.wait_for(controller.stop(), timeout=5)
    assert status.state is ProxyState.STOPPED


@pytest.mark.asyncio
async def test_stop_does_not_hang_on_unresponsive_master(store, free_port):
    controller = ProxyController(
        store,
        master_factory=lambda settings, addons: FakeMaster(settings, addons, hang=True),
    )
    controller.update_settings(port=free_port, grace_period=0.1)
    await controller.start()
    task = controller.proxy_task

    status = await asyncio.wait_for(controller.stop(), timeout=5)
    assert status.state is ProxyState.STOPPED
    assert task.cancelled()


@pytest.mark.asyncio
async def test_state_survives_restart(state_path, free_port, fake_masters):
    """Settings and lists come back after a stop and a fresh controller."""
    first = ProxyController(StateStore(state_path), master_factory=FakeMaster)
    first.set_port(free_port)
    first.update_policy(SetMode(mode=FilterMode.BLOCK_BY_DEFAULT))
    first.update_policy(AddEntry(list_name=ListName.ALLOW, pattern="google.com"))
    first.update_policy(AddEntry(list_name=ListName.DENY, pattern="ads.example.com"))
    await first.start()
    await first.stop()

    second = ProxyController(StateStore(state_path), master_factory=FakeMaster)
    assert second.settings.port == free_port
    assert second.policy.mode is FilterMode.BLOCK_BY_DEFAULT
    assert second.policy.allow.entries == ("google.com",)
    assert second.policy.deny.entries == ("ads.example.com",)


def test_every_mutation_is_persisted(controller, store):
    controller.update_policy(AddEntry(list_name=ListName.DENY, pattern="ads.com"))
    assert store.load().policy.deny.entries == ("ads.com",)
    controller.set_log_level("warning")
    assert store.load().settings.log_level is LogLevel.WARNING


def test_rejected_mutation_changes_nothing(controller, store):
    controller.update_policy(AddEntry(list_name=ListName.DENY, pattern="ads.com"))
    before = controller.policy
    with pytest.raises(PolicyUpdateError):
        controller.update_policy(AddEntry(list_name=ListName.DENY, pattern="ads.com"))
    assert controller.policy is before
    assert store.load().policy == before


def test_import_and_export_lists(controller):
    controller.import_list(ListName.ALLOW, [{"uri": "google.com"}, {"uri": "example.org"}])
    assert controller.export_list(ListName.ALLOW) == [{"uri": "google.com"}, {"uri": "example.org"}]


def test_failed_import_keeps_list(controller):
    """A bad import leaves the existing list in place."""
    controller.import_list(ListName.DENY, [{"uri": "ads.com"}])
    with pytest.raises(ListImportError):
        controller.import_list(ListName.DENY, [{"request": "tracker.com"}])
    assert controller.policy.deny.entries == ("ads.com",)


@pytest.mark.asyncio
async def test_port_change_while_running_rebinds(controller, free_port, fake_masters):
    controller.set_port(free_port)
    await controller.start()
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        new_port = s.getsockname()[1]
    controller.set_port(new_port)
    assert controller.running
    assert fake_masters[0].options.updates[-1] == {"listen_host": "127.0.0.1", "listen_port": new_port}
    await controller.stop()


def test_log_level_change_is_applied(controller):
    controller.set_log_level(LogLevel.ERROR)
    assert controller.events.level is LogLevel.ERROR
    assert controller.events.record_request("GET", "a.com/", Decision.ALLOWED) is None


def test_intercept_tls_setting_reaches_interceptor(controller):
    controller.set_intercept_tls(True)
    assert controller.interceptor.intercept_tls is True


def test_status_reports_policy_version(controller):
    controller.update_policy(SetMode(mode=FilterMode.ALLOW_BY_DEFAULT))
    status = controller.status()
    assert status.state is ProxyState.STOPPED
    assert status.policy_version == controller.policy.version
    assert status.uptime_seconds == 0.0


def test_probe_bind_rejects_busy_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen()
        with pytest.raises(BindError):
            probe_bind("127.0.0.1", busy.getsockname()[1])


def test_unknown_setting_is_rejected(controller, store):
    controller.set_port(9091)
    before = store.path.read_text()
    with pytest.raises(ValueError, match="prot"):
        controller.update_settings(prot=9092)
    assert controller.settings.port == 9091
    assert store.path.read_text() == before
