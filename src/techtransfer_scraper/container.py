"""
Dependency injection container wiring the broker, orchestrator and consumer.
"""

from __future__ import annotations

import asyncio
import inspect
import signal
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Generic, Iterable, List, Optional, TypeVar
from uuid import uuid4

import structlog
import yaml
from pydantic import ValidationError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from techtransfer_scraper.config import Config
from techtransfer_scraper.protocols import InstitutionType

if TYPE_CHECKING:
    from techtransfer_scraper.observability import MetricsManager
    from techtransfer_scraper.orchestrator import ScraperOrchestrator
    from techtransfer_scraper.queue import Broker, JobQueueConsumer
    from techtransfer_scraper.recovery import DeadLetterArchive

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """
    Lazy-loaded instance with lifecycle management.

    ``start`` and ``stop`` name the coroutine methods called after creation
    and on cleanup; either may be absent on the instance. Factories may be
    coroutine functions.
    """

    def __init__(
        self,
        factory: Callable[..., Any],
        *args: Any,
        start: str = "initialize",
        stop: str = "close",
        **kwargs: Any,
    ) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._start = start
        self._stop = stop
        self._instance: Optional[T] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def get(self) -> T:
        """Get or create the instance."""
        if not self._initialized:
            instance = self._factory(*self._args, **self._kwargs)
            if inspect.isawaitable(instance):
                instance = await instance
            self._instance = instance
            await self._call(self._start)
            self._initialized = True
        assert self._instance is not None
        return self._instance

    async def cleanup(self) -> None:
        """Clean up the instance."""
        if self._instance is not None:
            await self._call(self._stop)
        self._instance = None
        self._initialized = False

    async def _call(self, method_name: str) -> None:
        method = getattr(self._instance, method_name, None)
        if callable(method):
            result = method()
            if inspect.isawaitable(result):
                await result


class ConfigWatcher(FileSystemEventHandler):
    """Watches the configuration file and schedules a reload on the container's loop."""

    def __init__(self, container: DependencyContainer, loop: asyncio.AbstractEventLoop) -> None:
        self.container = container
        self.loop = loop
        self.logger = structlog.get_logger(self.__class__.__name__)

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory or self.container.config_path is None:
            return
        if Path(str(event.src_path)).resolve() != self.container.config_path.resolve():
            return
        self.logger.info("Configuration file changed, reloading", path=event.src_path)
        # Called from the watchdog thread
        asyncio.run_coroutine_threadsafe(self.container.reload_config(), self.loop)


class DependencyContainer:
    """
    Central dependency injection container for the scraping engine.

    Provides lazy initialization, lifecycle management, and configuration
    hot-reloading. Components are only built when first requested, so a
    ``dlq`` command never opens a broker connection.

    Args:
        config_path: YAML file to load (and watch); defaults are used when absent
        config: Ready configuration; skips loading
        broker: Broker to use instead of an AMQP connection
        institution_types: Classes the consumer subscribes to; all by default
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[Config] = None,
        broker: Optional[Broker] = None,
        institution_types: Optional[Iterable[InstitutionType]] = None,
    ) -> None:
        self.config_path = config_path
        self.config: Optional[Config] = config
        self.logger = structlog.get_logger(self.__class__.__name__)
        self._broker_override = broker
        self._institution_types = list(institution_types) if institution_types else None

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._instances_lock = asyncio.Lock()
        self._observer: Optional[Any] = None
        self._shutdown_handlers: List[Callable[[], Any]] = []
        self._stop_requested = asyncio.Event()

        self.instance_id = str(uuid4())
        self.is_running = False

    async def initialize(self, watch_config: bool = True, install_signal_handlers: bool = False) -> None:
        """Load configuration and prepare the lazy components."""
        if self.config is None:
            self.config = self._read_config()
        await self._create_instances()

        if watch_config:
            self._setup_config_watching()
        if install_signal_handlers:
            self._setup_signal_handlers()

        self.is_running = True
        self.logger.info(
            "Dependency container initialized",
            instance_id=self.instance_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    def _read_config(self) -> Config:
        if self.config_path and self.config_path.exists():
            return Config.from_yaml(self.config_path)
        return Config()

    async def _create_instances(self) -> None:
        """Create lazy instances with current configuration."""
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")

        await self._cleanup_instances()

        # Imported here so building a Config never pulls in the engines
        from techtransfer_scraper.observability import MetricsManager
        from techtransfer_scraper.queue import AmqpBroker
        from techtransfer_scraper.recovery import DeadLetterArchive

        config = self.config
        instances: Dict[str, LazyInstance[Any]] = {
            "metrics": LazyInstance(MetricsManager, config.monitoring, start="start", stop="stop"),
            "orchestrator": LazyInstance(self._build_orchestrator, start="start", stop="shutdown"),
            "consumer": LazyInstance(self._build_consumer, start="start", stop="stop"),
        }
        if self._broker_override is not None:
            broker = self._broker_override
            instances["broker"] = LazyInstance(lambda: broker, start="connect", stop="close")
        else:
            instances["broker"] = LazyInstance(AmqpBroker, config.queue, start="connect", stop="close")
        if config.orchestrator.dead_letter_db_path is not None:
            instances["dead_letter"] = LazyInstance(DeadLetterArchive, config.orchestrator.dead_letter_db_path)
        self._instances = instances

    async def _build_orchestrator(self) -> ScraperOrchestrator:
        from techtransfer_scraper.orchestrator import ScraperOrchestrator, cpu_load_factor

        assert self.config is not None
        broker = await self._instances["broker"].get()
        dead_letter = self._instances.get("dead_letter")
        return ScraperOrchestrator(
            self.config,
            broker,
            archive=await dead_letter.get() if dead_letter is not None else None,
            load_probe=cpu_load_factor,
        )

    async def _build_consumer(self) -> JobQueueConsumer:
        from techtransfer_scraper.queue import JobQueueConsumer

        assert self.config is not None
        broker = await self._instances["broker"].get()
        orchestrator = await self._instances["orchestrator"].get()
        return JobQueueConsumer(
            broker,
            orchestrator,
            self.config.queue,
            institution_types=self._institution_types,
            shutdown_grace=self.config.orchestrator.shutdown_grace_seconds,
        )

    async def reload_config(self) -> bool:
        """
        Hot-reload configuration.

        An unreadable or invalid file keeps the current configuration. While
        the consumer runs, the live orchestrator is reconfigured in place and
        the next job sees the new adapters, limits and breaker thresholds;
        otherwise the lazy components are rebuilt.
        """
        try:
            new_config = self._read_config()
        except (ValidationError, FileNotFoundError, yaml.YAMLError) as e:
            self.logger.error("Configuration reload failed, keeping current settings", error=str(e))
            return False

        changed = new_config != self.config
        if changed:
            self.config = new_config
            consumer = self._instances.get("consumer")
            if consumer is not None and consumer.initialized:
                orchestrator = await self._instances["orchestrator"].get()
                orchestrator.reconfigure(new_config)
            else:
                async with self._instances_lock:
                    await self._create_instances()

        self.logger.info("Configuration reloaded", instance_id=self.instance_id, changes_detected=changed)
        return changed

    async def get_broker(self) -> Broker:
        """Get the connected broker."""
        async with self._instances_lock:
            return await self._instances["broker"].get()  # type: ignore

    async def get_orchestrator(self) -> ScraperOrchestrator:
        """Get the started orchestrator."""
        async with self._instances_lock:
            return await self._instances["orchestrator"].get()  # type: ignore

    async def get_consumer(self) -> JobQueueConsumer:
        """Get the running job consumer."""
        async with self._instances_lock:
            return await self._instances["consumer"].get()  # type: ignore

    async def get_dead_letter(self) -> Optional[DeadLetterArchive]:
        """Get the dead-letter archive, or None when it is disabled."""
        async with self._instances_lock:
            instance = self._instances.get("dead_letter")
            return await instance.get() if instance is not None else None

    async def get_metrics(self) -> MetricsManager:
        """Get the started metrics manager."""
        async with self._instances_lock:
            return await self._instances["metrics"].get()  # type: ignore

    async def run_consumer(self) -> None:
        """Consume until ``request_stop`` (or SIGINT/SIGTERM when handlers are installed)."""
        await self.get_metrics()
        consumer = await self.get_consumer()
        await self._stop_requested.wait()
        await consumer.stop()

    def request_stop(self) -> None:
        self._stop_requested.set()

    @asynccontextmanager
    async def lifecycle(
        self, watch_config: bool = True, install_signal_handlers: bool = False
    ) -> AsyncIterator[DependencyContainer]:
        """Context manager for proper lifecycle management."""
        try:
            await self.initialize(watch_config=watch_config, install_signal_handlers=install_signal_handlers)
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Graceful shutdown of all managed instances."""
        if not self.is_running:
            return

        self.logger.info("Shutting down dependency container", instance_id=self.instance_id)

        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None

        for handler in self._shutdown_handlers:
            try:
                result = handler()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))

        await self._cleanup_instances()

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    def _setup_config_watching(self) -> None:
        """Set up file system watching for configuration changes."""
        if not self.config_path or self._observer is not None:
            return

        self._observer = Observer()
        handler = ConfigWatcher(self, asyncio.get_running_loop())
        self._observer.schedule(handler, str(self.config_path.resolve().parent), recursive=False)
        self._observer.start()

    def _setup_signal_handlers(self) -> None:
        """Route SIGINT and SIGTERM to a graceful stop."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            self.logger.info("Received signal, initiating shutdown", signal=signal.Signals(signum).name)
            self.request_stop()

        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, signal_handler, signum)

    async def _cleanup_instances(self) -> None:
        """Clean up all managed instances, dependents first."""
        for name in ("consumer", "orchestrator", "dead_letter", "broker", "metrics"):
            instance = self._instances.get(name)
            if instance is None:
                continue
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up component", component=name, error=str(e))

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        """Add a custom shutdown handler."""
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        """Get health status of all managed components."""
        return {
            "instance_id": self.instance_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "instances": {name: lazy.initialized for name, lazy in self._instances.items()},
            "config_path": str(self.config_path) if self.config_path else None,
        }
