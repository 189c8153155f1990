"""
Tests for DependencyContainer: lazy wiring, lifecycle and configuration
hot-reloading.
"""

import pytest
import yaml

from techtransfer_scraper.container import DependencyContainer, LazyInstance
from techtransfer_scraper.protocols import EngineType, InstitutionType


def write_config(path, sections=None, **retry):
    data = {
        "retry": {"jitter_max": 0.0, **retry},
        "orchestrator": {"dead_letter_db_path": str(path.parent / "dead_letter.db")},
        **(sections or {}),
    }
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class Component:
    def __init__(self):
        self.events = []

    async def initialize(self):
        self.events.append("initialize")

    def close(self):
        self.events.append("close")


@pytest.mark.unit
class TestLazyInstance:
    @pytest.mark.asyncio
    async def test_created_once_and_started(self):
        lazy = LazyInstance(Component)

        first = await lazy.get()
        second = await lazy.get()

        assert first is second
        assert first.events == ["initialize"]

    @pytest.mark.asyncio
    async def test_cleanup_calls_sync_stop(self):
        lazy = LazyInstance(Component)
        component = await lazy.get()

        await lazy.cleanup()

        assert component.events == ["initialize", "close"]
        assert not lazy.initialized

    @pytest.mark.asyncio
    async def test_async_factory_and_missing_hooks(self):
        async def factory():
            return object()

        lazy = LazyInstance(factory, start="start", stop="stop")

        assert await lazy.get() is not None
        await lazy.cleanup()


@pytest.mark.unit
class TestWiring:
    @pytest.mark.asyncio
    async def test_components_are_built_on_demand(self, test_config, memory_broker):
        container = DependencyContainer(config=test_config, broker=memory_broker)
        await container.initialize(watch_config=False)

        health = container.get_health_status()
        assert health["is_running"]
        assert not any(health["instances"].values())

        orchestrator = await container.get_orchestrator()

        assert orchestrator.broker is memory_broker
        assert orchestrator.archive is await container.get_dead_letter()
        assert memory_broker.connected
        assert not container.get_health_status()["instances"]["consumer"]
        await container.shutdown()

    @pytest.mark.asyncio
    async def test_consumer_subscribes_to_requested_classes(self, test_config, memory_broker):
        container = DependencyContainer(
            config=test_config, broker=memory_broker, institution_types=[InstitutionType.FEDERAL_LAB]
        )
        await container.initialize(watch_config=False)

        consumer = await container.get_consumer()

        assert consumer.is_running
        assert consumer.institution_types == [InstitutionType.FEDERAL_LAB]
        assert consumer.shutdown_grace == 1.0
        await container.shutdown()
        assert not consumer.is_running
        assert not memory_broker.connected

    @pytest.mark.asyncio
    async def test_disabled_archive(self, test_config, memory_broker):
        test_config.orchestrator.dead_letter_db_path = None
        container = DependencyContainer(config=test_config, broker=memory_broker)
        await container.initialize(watch_config=False)

        assert await container.get_dead_letter() is None
        assert (await container.get_orchestrator()).archive is None
        await container.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent_and_runs_handlers(self, test_config, memory_broker):
        calls = []
        container = DependencyContainer(config=test_config, broker=memory_broker)
        container.add_shutdown_handler(lambda: calls.append("sync"))

        async def failing():
            raise RuntimeError("handler broke")

        container.add_shutdown_handler(failing)

        async with container.lifecycle(watch_config=False):
            pass
        await container.shutdown()

        assert calls == ["sync"]
        assert not container.is_running


@pytest.mark.unit
class TestReload:
    @pytest.mark.asyncio
    async def test_changed_file_rebuilds_idle_components(self, tmp_path, memory_broker):
        path = write_config(tmp_path / "config.yaml", max_retries=3)
        container = DependencyContainer(config_path=path, broker=memory_broker)
        await container.initialize(watch_config=False)

        write_config(path, max_retries=5)

        assert await container.reload_config()
        assert container.config.retry.max_retries == 5
        assert (await container.get_orchestrator()).config.retry.max_retries == 5
        await container.shutdown()

    @pytest.mark.asyncio
    async def test_running_consumer_keeps_its_orchestrator(self, tmp_path, memory_broker):
        path = write_config(tmp_path / "config.yaml", max_retries=3)
        container = DependencyContainer(config_path=path, broker=memory_broker)
        await container.initialize(watch_config=False)
        await container.get_consumer()
        orchestrator = await container.get_orchestrator()

        write_config(path, max_retries=1, initial_delay=0.5)

        assert await container.reload_config()
        assert await container.get_orchestrator() is orchestrator
        assert orchestrator.config.retry.max_retries == 1
        assert orchestrator.retry_policy.jitter_max == 0.0
        await container.shutdown()

    @pytest.mark.asyncio
    async def test_running_orchestrator_picks_up_adapter_limit_and_breaker_settings(self, tmp_path, memory_broker):
        path = write_config(tmp_path / "config.yaml")
        container = DependencyContainer(config_path=path, broker=memory_broker)
        await container.initialize(watch_config=False)
        await container.get_consumer()
        orchestrator = await container.get_orchestrator()
        breaker = orchestrator.breaker_for(EngineType.STATIC)
        federal = orchestrator.adapters[InstitutionType.FEDERAL_LAB]

        sections = {
            "federal": {"allowed_suffixes": [".gov", ".example"]},
            "circuit_breaker": {"minimum_calls": 9},
            "rate_limits": {"default": {"requests_per_second": 4.0}},
        }
        write_config(path, sections)

        assert await container.reload_config()
        assert orchestrator.adapters[InstitutionType.FEDERAL_LAB] is not federal
        assert orchestrator.adapters[InstitutionType.FEDERAL_LAB].config.allowed_suffixes == [".gov", ".example"]
        assert orchestrator.breaker_for(EngineType.STATIC) is breaker
        assert breaker.settings.minimum_calls == 9
        assert orchestrator.rate_limiter.default_config.requests_per_second == 4.0
        await container.shutdown()

    @pytest.mark.asyncio
    async def test_invalid_file_keeps_current_settings(self, tmp_path, memory_broker):
        path = write_config(tmp_path / "config.yaml", max_retries=3)
        container = DependencyContainer(config_path=path, broker=memory_broker)
        await container.initialize(watch_config=False)

        path.write_text("retry: {max_retries: -4}", encoding="utf-8")

        assert not await container.reload_config()
        assert container.config.retry.max_retries == 3
        await container.shutdown()

    @pytest.mark.asyncio
    async def test_unchanged_file_is_a_no_op(self, tmp_path, memory_broker):
        path = write_config(tmp_path / "config.yaml")
        container = DependencyContainer(config_path=path, broker=memory_broker)
        await container.initialize(watch_config=False)

        assert not await container.reload_config()
        await container.shutdown()
