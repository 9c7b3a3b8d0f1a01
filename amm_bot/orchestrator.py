"""Bot instance lifecycle.

An :class:`Orchestrator` owns one :class:`BotRegistry` and starts, stops and
restarts bot instances. Each instance gets its own AMM engine; sniper and
copy-trading modules are shared by all instances of a user and only stopped
once no other running instance of that user still needs them.

Status moves ``starting -> running -> stopping -> stopped``. ``error`` is
reachable from ``starting`` and ``running`` only.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Protocol, Tuple

from amm_bot.config import BotConfiguration
from amm_bot.errors import AmmBotError, InvalidTransition
from amm_bot.logging_setup import InstanceLogAdapter
from amm_bot.models import BotInstance, BotStatus

LOGGER = logging.getLogger(__name__)

MODULE_AMM = "amm"
MODULE_SNIPER = "sniper"
MODULE_COPY_TRADING = "copyTrading"

_TRANSITIONS: Dict[BotStatus, FrozenSet[BotStatus]] = {
    BotStatus.STARTING: frozenset({BotStatus.RUNNING, BotStatus.ERROR, BotStatus.STOPPING}),
    BotStatus.RUNNING: frozenset({BotStatus.STOPPING, BotStatus.ERROR}),
    BotStatus.STOPPING: frozenset({BotStatus.STOPPED}),
    BotStatus.STOPPED: frozenset(),
    BotStatus.ERROR: frozenset({BotStatus.STOPPING}),
}

_ACTIVE = frozenset({BotStatus.STARTING, BotStatus.RUNNING})


class SharedModule(Protocol):
    """A per-user strategy module (sniper, copy trading)."""

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...


class EngineHandle(Protocol):
    running: bool

    def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...


EngineFactory = Callable[[str, BotConfiguration], EngineHandle]
ModuleFactory = Callable[[str, BotConfiguration], SharedModule]


@dataclass(frozen=True)
class StartResult:
    success: bool
    instance_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class StopResult:
    success: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class OrchestratorStats:
    total: int
    running: int
    stopped: int
    error: int
    instances: List[Dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class BotRegistry:
    def __init__(self) -> None:
        self._instances: Dict[str, BotInstance] = {}

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._instances

    def add(self, instance: BotInstance) -> None:
        if instance.id in self._instances:
            raise ValueError(f"duplicate instance id {instance.id}")
        self._instances[instance.id] = instance

    def get(self, instance_id: str) -> Optional[BotInstance]:
        return self._instances.get(instance_id)

    def values(self) -> List[BotInstance]:
        return list(self._instances.values())

    def by_config(self, config_id: str) -> List[BotInstance]:
        return [i for i in self._instances.values() if i.config_id == config_id]

    def by_user(self, user_id: str) -> List[BotInstance]:
        return [i for i in self._instances.values() if i.user_id == user_id]

    def active_for_config(self, config_id: str) -> Optional[BotInstance]:
        """The starting or running instance of ``config_id``, if any."""
        for instance in self._instances.values():
            if instance.config_id == config_id and instance.status in _ACTIVE:
                return instance
        return None

    def set_status(self, instance: BotInstance, status: BotStatus, error: str | None = None) -> None:
        if status not in _TRANSITIONS[instance.status]:
            raise InvalidTransition(f"{instance.id}: {instance.status.value} -> {status.value}")
        instance.status = status
        instance.status_history.append(status)
        if error is not None:
            instance.error = error


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def _new_instance_id() -> str:
    return f"instance_{uuid.uuid4().hex[:12]}"


class Orchestrator:
    def __init__(
        self,
        engine_factory: EngineFactory,
        sniper_factory: ModuleFactory | None = None,
        copy_trading_factory: ModuleFactory | None = None,
        registry: BotRegistry | None = None,
        id_factory: Callable[[], str] = _new_instance_id,
        restart_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._engine_factory = engine_factory
        self._module_factories: Dict[str, Optional[ModuleFactory]] = {
            MODULE_SNIPER: sniper_factory,
            MODULE_COPY_TRADING: copy_trading_factory,
        }
        self.registry = registry if registry is not None else BotRegistry()
        self._id_factory = id_factory
        self._restart_delay = restart_delay
        self._sleep = sleep or asyncio.sleep
        # module name -> user id -> running module
        self._shared: Dict[str, Dict[str, SharedModule]] = {MODULE_SNIPER: {}, MODULE_COPY_TRADING: {}}
        # serialises start and stop of one user's module
        self._module_locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def shared_module(self, module: str, user_id: str) -> Optional[SharedModule]:
        return self._shared[module].get(user_id)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_bot(self, config: BotConfiguration, user_id: str | None = None) -> StartResult:
        config.validate()
        user_id = user_id or config.user_id
        instance_id = self._id_factory()
        log = InstanceLogAdapter(LOGGER, instance_id, "Orchestrator")
        log.info("starting bot %s", config.name, metadata={"config_id": config.config_id})

        existing = self.registry.active_for_config(config.config_id)
        if existing is not None:
            log.warning("config %s already running as %s", config.config_id, existing.id)
            return StartResult(False, error="Bot with this configuration is already running")

        instance = BotInstance(id=instance_id, config_id=config.config_id, config=config, user_id=user_id)
        self.registry.add(instance)
        failures: List[str] = []

        if config.sniper_enabled:
            await self._start_shared(MODULE_SNIPER, instance, failures, log)
        if config.copy_trading_enabled:
            if not config.trader_addresses:
                log.with_category("CopyTrading").warning("no trader addresses configured")
                failures.append("copyTrading: no trader addresses configured")
            else:
                await self._start_shared(MODULE_COPY_TRADING, instance, failures, log)
        if config.amm_enabled:
            await self._start_engine(instance, failures, log)

        if not instance.modules:
            reason = "; ".join(failures) or "No modules started"
            self.registry.set_status(instance, BotStatus.ERROR, reason)
            log.error("bot failed to start any modules", metadata={"failures": failures})
            return StartResult(False, instance_id, reason)

        self.registry.set_status(instance, BotStatus.RUNNING)
        if failures:
            instance.error = f"degraded: {'; '.join(failures)}"
            log.warning("bot started in degraded mode", metadata={"failures": failures})
        log.info("bot running", metadata={"modules": instance.modules, "running": len(self.running_instances())})
        return StartResult(True, instance_id, instance.error)

    def _module_lock(self, module: str, user_id: str) -> asyncio.Lock:
        return self._module_locks.setdefault((module, user_id), asyncio.Lock())

    async def _start_shared(
        self, module: str, instance: BotInstance, failures: List[str], log: InstanceLogAdapter
    ) -> None:
        mlog = log.with_category(module)
        running = self._shared[module]
        async with self._module_lock(module, instance.user_id):
            if instance.user_id in running:
                mlog.info("already running for user, sharing")
                instance.modules.append(module)
                return
            factory = self._module_factories[module]
            if factory is None:
                failures.append(f"{module}: module unavailable")
                mlog.error("no %s module configured", module)
                return
            try:
                handle = factory(instance.user_id, instance.config)
                await handle.start()
            except AmmBotError as exc:
                failures.append(f"{module}: {exc}")
                mlog.error("failed to start: %s", exc)
                return
            except Exception as exc:
                failures.append(f"{module}: {exc}")
                mlog.exception("unexpected error starting %s", module)
                return
            running[instance.user_id] = handle
            instance.modules.append(module)
        mlog.info("started")

    async def _start_engine(self, instance: BotInstance, failures: List[str], log: InstanceLogAdapter) -> None:
        alog = log.with_category("AMM")
        try:
            engine = self._engine_factory(instance.id, instance.config)
            engine.start()
        except AmmBotError as exc:
            failures.append(f"amm: {exc}")
            alog.error("failed to start AMM engine: %s", exc)
            return
        except Exception as exc:
            failures.append(f"amm: {exc}")
            alog.exception("unexpected error starting AMM engine")
            return
        instance.engine = engine
        instance.modules.append(MODULE_AMM)
        alog.info("AMM engine started")

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop_bot(self, instance_id: str) -> StopResult:
        """Stop one instance.

        The instance always ends ``stopped``; an engine or module that fails
        to stop is logged and reported in the result's ``error``.
        """
        instance = self.registry.get(instance_id)
        if instance is None:
            LOGGER.warning("stop requested for unknown instance %s", instance_id)
            return StopResult(False, "Bot instance not found")
        if instance.status in (BotStatus.STOPPED, BotStatus.STOPPING):
            return StopResult(True)

        log = InstanceLogAdapter(LOGGER, instance_id, "Orchestrator")
        log.info("stopping bot")
        self.registry.set_status(instance, BotStatus.STOPPING)
        errors: List[str] = []
        try:
            if instance.engine is not None:
                try:
                    await instance.engine.stop()
                except Exception as exc:
                    errors.append(f"amm: {exc}")
                    log.with_category("AMM").exception("engine failed to stop cleanly")
                finally:
                    instance.engine = None

            for module in (MODULE_SNIPER, MODULE_COPY_TRADING):
                await self._release_shared(module, instance, errors, log)
        finally:
            self.registry.set_status(instance, BotStatus.STOPPED)

        log.info("bot stopped", metadata={"running": len(self.running_instances())})
        if errors:
            return StopResult(True, "; ".join(errors))
        return StopResult(True)

    async def _release_shared(
        self, module: str, instance: BotInstance, errors: List[str], log: InstanceLogAdapter
    ) -> None:
        mlog = log.with_category(module)
        async with self._module_lock(module, instance.user_id):
            handle = self._shared[module].get(instance.user_id)
            if handle is None:
                return
            others = [
                i for i in self.registry.by_user(instance.user_id)
                if i.id != instance.id and i.status in _ACTIVE and module in i.modules
            ]
            if others:
                mlog.info("kept running for other instances")
                return
            del self._shared[module][instance.user_id]
            try:
                await handle.stop()
            except Exception as exc:
                errors.append(f"{module}: {exc}")
                mlog.exception("failed to stop cleanly")
                return
        mlog.info("stopped")

    async def stop_all(self) -> None:
        targets = [i.id for i in self.registry.values() if i.status != BotStatus.STOPPED]
        LOGGER.info("stopping %d bot instances", len(targets))
        for instance_id in targets:
            await self.stop_bot(instance_id)

    async def restart_bot(self, instance_id: str) -> StartResult:
        instance = self.registry.get(instance_id)
        if instance is None:
            return StartResult(False, error="Bot instance not found")
        stopped = await self.stop_bot(instance_id)
        if not stopped.success:
            return StartResult(False, instance_id, stopped.error)
        await self._sleep(self._restart_delay)
        return await self.start_bot(instance.config, instance.user_id)

    def mark_error(self, instance_id: str, error: str) -> None:
        instance = self.registry.get(instance_id)
        if instance is None:
            return
        self.registry.set_status(instance, BotStatus.ERROR, error)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_instance(self, instance_id: str) -> Optional[BotInstance]:
        return self.registry.get(instance_id)

    def instances_by_config(self, config_id: str) -> List[BotInstance]:
        return self.registry.by_config(config_id)

    def instances_by_user(self, user_id: str) -> List[BotInstance]:
        return self.registry.by_user(user_id)

    def running_instances(self) -> List[BotInstance]:
        return [i for i in self.registry.values() if i.status == BotStatus.RUNNING]

    def get_stats(self) -> OrchestratorStats:
        instances = self.registry.values()
        return OrchestratorStats(
            total=len(instances),
            running=sum(1 for i in instances if i.status == BotStatus.RUNNING),
            stopped=sum(1 for i in instances if i.status == BotStatus.STOPPED),
            error=sum(1 for i in instances if i.status == BotStatus.ERROR),
            instances=[
                {
                    "id": i.id,
                    "config_id": i.config_id,
                    "name": i.config.name,
                    "status": i.status.value,
                    "modules": list(i.modules),
                    "started_at": i.started_at.isoformat(),
                    "error": i.error,
                }
                for i in instances
            ],
        )
