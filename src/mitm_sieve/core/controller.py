import asyncio
import socket
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import structlog
from mitmproxy import options
from mitmproxy.tools.dump import DumpMaster

from ..errors import BindError, CorruptStateError, PersistenceError
from ..models import (
    FilterPolicy,
    ListName,
    LogEntry,
    LogLevel,
    Mutation,
    PersistedState,
    ProxySettings,
    ProxyState,
    ProxyStatus,
    ReplaceList,
)
from .events import EventLog
from .interceptor import FilterInterceptor
from .policy import PolicyStore, export_list, import_list
from .store import StateStore

logger = structlog.get_logger()

MasterFactory = Callable[[ProxySettings, List[Any]], Any]

# How long start() waits for the proxy task to fail before calling it running.
_STARTUP_PROBE = 0.2
_DRAIN_POLL = 0.05


def build_dump_master(settings: ProxySettings, addons: List[Any]) -> DumpMaster:
    opts = options.Options(listen_host=settings.bind_address, listen_port=settings.port)
    master = DumpMaster(
        opts,
        with_termlog=False,
        with_dumper=False,
    )
    # errorcheck exits the process on startup errors; bind failures are ours to report.
    errorcheck = master.addons.get("errorcheck")
    if errorcheck is not None:
        master.addons.remove(errorcheck)
    master.addons.add(*addons)
    return master


def probe_bind(host: str, port: int) -> None:
    """Raises BindError if ``host:port`` cannot be bound right now."""
    try:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
    except socket.gaierror as e:
        raise BindError(f"Can't resolve bind address {host}: {e}") from e

    family, socktype, proto, _, addr = infos[0]
    try:
        with socket.socket(family, socktype, proto) as probe:
            probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            probe.bind(addr)
    except OSError as e:
        raise BindError(f"Can't bind {host}:{port}: {e.strerror or e}") from e


class ProxyController:
    """Owns the proxy lifecycle, the published policy, and the settings.

    State is read from ``store`` once, when the controller is created, and
    written back after every committed change and on stop.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        master_factory: Optional[MasterFactory] = None,
        event_log: Optional[EventLog] = None,
    ):
        self.store = store
        self.master_factory = master_factory or build_dump_master
        self.master: Optional[Any] = None
        self.proxy_task: Optional[asyncio.Task] = None
        self.state = ProxyState.STOPPED
        self.error: Optional[str] = None
        self.started_at: Optional[float] = None
        self._lifecycle_lock = asyncio.Lock()

        state, problem = self._restore()
        self._settings = state.settings
        self.events = event_log or EventLog(
            capacity=state.settings.log_capacity,
            level=state.settings.log_level,
        )
        self.policies = PolicyStore(state.policy)
        self.interceptor = FilterInterceptor(
            self.policies,
            self.events,
            intercept_tls=state.settings.intercept_tls,
        )
        if problem:
            self.events.record(LogLevel.ERROR, problem, cause="persistence")

    def _restore(self):
        try:
            state = self.store.load()
        except CorruptStateError as e:
            logger.error("state_corrupt", path=str(self.store.path), error=str(e))
            return PersistedState(), f"Saved state was unreadable, using defaults: {e}"
        except PersistenceError as e:
            logger.error("state_unreadable", path=str(self.store.path), error=str(e))
            return PersistedState(), f"Saved state couldn't be read, using defaults: {e}"

        if state is None:
            logger.info("state_absent", path=str(self.store.path))
            return PersistedState(), None
        logger.info("state_loaded", path=str(self.store.path), policy_version=state.policy.version)
        return state, None

    # --- read side ---

    @property
    def settings(self) -> ProxySettings:
        return self._settings

    @property
    def policy(self) -> FilterPolicy:
        return self.policies.current

    @property
    def running(self) -> bool:
        return self.state is ProxyState.RUNNING

    def status(self) -> ProxyStatus:
        uptime = time.monotonic() - self.started_at if self.started_at and self.running else 0.0
        return ProxyStatus(
            state=self.state,
            error=self.error,
            uptime_seconds=round(uptime, 3),
            settings=self._settings,
            policy_version=self.policy.version,
            in_flight=self.interceptor.in_flight,
        )

    def query_events(
        self,
        min_level: LogLevel = LogLevel.DEBUG,
        limit: Optional[int] = None,
        after_seq: Optional[int] = None,
    ) -> List[LogEntry]:
        return self.events.query(min_level, limit, after_seq)

    # --- lifecycle ---

    async def start(self) -> ProxyStatus:
        async with self._lifecycle_lock:
            if self.state is not ProxyState.STOPPED:
                return self.status()

            self.state = ProxyState.STARTING
            self.error = None
            settings = self._settings
            try:
                probe_bind(settings.bind_address, settings.port)
                self.interceptor.draining = False
                self.master = self.master_factory(settings, [self.interceptor])
                self.proxy_task = asyncio.create_task(self.master.run())
                done, _ = await asyncio.wait({self.proxy_task}, timeout=_STARTUP_PROBE)
                if done:
                    task = self.proxy_task
                    exc = None if task.cancelled() else task.exception()
                    raise BindError(str(exc) if exc else "Proxy exited during startup")
            except Exception as e:
                self._teardown()
                self.state = ProxyState.STOPPED
                self.error = str(e)
                self.events.record(LogLevel.ERROR, f"Couldn't start proxy: {e}", cause="bind")
                logger.error(
                    "proxy_start_failed",
                    host=settings.bind_address,
                    port=settings.port,
                    error=str(e),
                )
                if isinstance(e, BindError):
                    raise
                raise BindError(str(e)) from e

            self.state = ProxyState.RUNNING
            self.started_at = time.monotonic()
            self.events.record(
                LogLevel.GLOBAL,
                f"Proxy running on {settings.bind_address}:{settings.port}",
            )
            logger.info("proxy_started", host=settings.bind_address, port=settings.port)
            return self.status()

    async def stop(self) -> ProxyStatus:
        async with self._lifecycle_lock:
            if self.state is not ProxyState.RUNNING:
                return self.status()

            self.state = ProxyState.STOPPING
            self.interceptor.draining = True
            grace = self._settings.grace_period

            deadline = time.monotonic() + grace
            while self.interceptor.in_flight and time.monotonic() < deadline:
                await asyncio.sleep(_DRAIN_POLL)
            if self.interceptor.in_flight:
                logger.warning("proxy_drain_timeout", in_flight=self.interceptor.in_flight)

            if self.master is not None:
                self.master.shutdown()
            if self.proxy_task is not None:
                try:
                    await asyncio.wait_for(self.proxy_task, timeout=max(grace, _DRAIN_POLL))
                except asyncio.TimeoutError:
                    logger.warning("proxy_forced_shutdown")
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.error("proxy_task_failed", error=str(e))
            self._teardown()

            self.state = ProxyState.STOPPED
            self.started_at = None
            self.events.record(LogLevel.GLOBAL, "Proxy stopped")
            logger.info("proxy_stopped")
            try:
                self.persist()
            except PersistenceError as e:
                self.error = str(e)
            return self.status()

    def _teardown(self):
        if self.proxy_task is not None and not self.proxy_task.done():
            self.proxy_task.cancel()
        self.proxy_task = None
        self.master = None
        self.interceptor.draining = False

    # --- mutations ---

    def persist(self) -> None:
        state = PersistedState(settings=self._settings, policy=self.policy)
        try:
            self.store.save(state)
        except PersistenceError as e:
            self.events.record(LogLevel.ERROR, str(e), cause="persistence")
            logger.error("state_save_failed", path=str(self.store.path), error=str(e))
            raise

    def update_policy(self, mutation: Mutation) -> FilterPolicy:
        """Publishes the mutated policy, then persists it.

        PolicyUpdateError leaves the policy as it was. PersistenceError means
        the new policy is live but not yet on disk.
        """
        snapshot = self.policies.update(mutation)
        logger.info("policy_updated", version=snapshot.version, op=mutation.op)
        self.persist()
        return snapshot

    def import_list(self, list_name: ListName, rows: Iterable[Mapping[str, object]]) -> FilterPolicy:
        imported = import_list(list_name, rows)
        return self.update_policy(ReplaceList(list_name=imported.name, entries=list(imported.entries)))

    def export_list(self, list_name: ListName) -> List[Dict[str, str]]:
        return export_list(self.policy.get_list(list_name))

    def update_settings(self, **changes: Any) -> ProxySettings:
        """Validates and applies new settings without leaving the current state."""
        unknown = sorted(set(changes) - set(ProxySettings.model_fields))
        if unknown:
            raise ValueError(f"Unknown setting(s): {', '.join(unknown)}")
        previous = self._settings
        updated = ProxySettings.model_validate({**previous.model_dump(), **changes})

        rebind = (updated.bind_address, updated.port) != (previous.bind_address, previous.port)
        if rebind and self.running:
            probe_bind(updated.bind_address, updated.port)
        self._settings = updated

        if updated.log_level != previous.log_level:
            self.events.set_level(updated.log_level)
        if updated.log_capacity != previous.log_capacity:
            self.events.resize(updated.log_capacity)
        self.interceptor.intercept_tls = updated.intercept_tls

        if rebind and self.running and self.master is not None:
            # mitmproxy restarts its listeners when these options change.
            self.master.options.update(listen_host=updated.bind_address, listen_port=updated.port)
            self.events.record(
                LogLevel.GLOBAL,
                f"Proxy moved to {updated.bind_address}:{updated.port}",
            )

        logger.info("settings_updated", **{k: str(v) for k, v in changes.items()})
        self.persist()
        return updated

    def set_port(self, port: int) -> ProxySettings:
        return self.update_settings(port=port)

    def set_bind_address(self, address: str) -> ProxySettings:
        return self.update_settings(bind_address=address)

    def set_log_level(self, level: LogLevel) -> ProxySettings:
        return self.update_settings(log_level=LogLevel.parse(level))

    def set_intercept_tls(self, enabled: bool) -> ProxySettings:
        return self.update_settings(intercept_tls=enabled)
