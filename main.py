"""
Main Application Entry Point

This module serves as the main entry point for the Location Health Engine.
It wires configuration, logging, the result store, the metrics gateway and
the processing engine together, runs the engine until a shutdown signal
arrives and then stops every component in reverse order.

Author: Development Team
Version: 1.0.0
Date: 2025-09-16
"""

import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config.logging_config import get_logger, get_performance_logger, setup_logging
from config.settings import AppConfig, get_config
from core.processing_engine import ProcessingEngine
from core.scheduler import RepeatingTimer
from integrations.metrics_gateway import HttpMetricsGateway
from storage.state_manager import StateManager
from utils.exceptions import ApplicationError
from utils.helpers import ensure_directories


class Application:
    """
    Main application class that orchestrates all components.

    Owns the lifecycle of the state manager, the metrics gateway and the
    processing engine, and keeps the process alive until shutdown.
    """

    def __init__(self, config: Optional[AppConfig] = None):
        """
        Initialize the application with configuration.

        Args:
            config: Optional configuration override
        """
        self.config = config or get_config()

        self.logger = None
        self.perf_logger = None
        self._setup_logging()

        self.state_manager: Optional[StateManager] = None
        self.metrics_gateway: Optional[HttpMetricsGateway] = None
        self.engine: Optional[ProcessingEngine] = None
        self.metrics_timer: Optional[RepeatingTimer] = None

        self.is_running = False
        self.startup_time: Optional[datetime] = None
        self.shutdown_tasks: list = []
        self._stop_event = asyncio.Event()

        self.logger.info(f"Application initialized - Version {self.config.app_version}")

    def _setup_logging(self) -> None:
        """Setup logging configuration."""
        try:
            setup_logging(self.config.logging_dict())
        except OSError as e:
            print(f"Failed to setup logging: {e}")
            sys.exit(1)

        self.logger = get_logger(__name__)
        self.perf_logger = get_performance_logger(__name__)
        self.logger.info("Logging system initialized successfully")

    async def initialize(self) -> None:
        """
        Initialize all application components in dependency order.

        Raises:
            ApplicationError: If initialization fails
        """
        try:
            self.logger.info("Starting application initialization...")

            ensure_directories([self.config.data_dir, self.config.logs_dir])

            await self._initialize_state_manager()
            await self._initialize_metrics_gateway()
            self._initialize_engine()

            await self._perform_health_checks()
            self._setup_signal_handlers()

            self.startup_time = datetime.now(timezone.utc)
            self.logger.info("Application initialization completed successfully")

        except Exception as e:
            self.logger.error(f"Application initialization failed: {e}", exc_info=True)
            await self._run_shutdown_tasks()
            raise ApplicationError(f"Initialization failed: {e}") from e

    async def _initialize_state_manager(self) -> None:
        """Initialize the result store."""
        self.state_manager = StateManager(
            database_url=self.config.database.database_url,
            echo=self.config.database.echo_sql,
        )
        await self.state_manager.initialize()
        self.shutdown_tasks.append(self.state_manager.close)
        self.logger.info("State manager initialized")

    async def _initialize_metrics_gateway(self) -> None:
        """Initialize the metrics API client."""
        self.metrics_gateway = HttpMetricsGateway(self.config.metrics_gateway)
        await self.metrics_gateway.initialize()
        self.shutdown_tasks.append(self.metrics_gateway.close)
        self.logger.info(f"Metrics gateway initialized ({self.metrics_gateway.metrics_url})")

    def _initialize_engine(self) -> None:
        """Create the processing engine."""
        self.engine = ProcessingEngine(
            persistence=self.state_manager,
            metrics_gateway=self.metrics_gateway,
            engine_config=self.config.engine,
            scoring_config=self.config.scoring,
        )
        self.shutdown_tasks.append(self.engine.stop)
        self.logger.info(
            f"Processing engine created (max_concurrent_tasks={self.config.engine.max_concurrent_tasks})"
        )

    async def _perform_health_checks(self) -> None:
        """Log the health of every component without failing startup."""
        health = await self.engine.health_check()
        components = health["components"]
        healthy = sum(1 for result in components.values() if result.get('status') == 'healthy')

        self.logger.info(f"Health check completed: {healthy}/{len(components)} components healthy")
        for component, result in components.items():
            if result.get('status') != 'healthy':
                self.logger.warning(f"{component}: {result}")

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, initiating graceful shutdown...")
            self._stop_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM, getattr(signal, 'SIGHUP', None)):
            if signum is None:
                continue
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(signum, lambda s, frame: loop.call_soon_threadsafe(signal_handler, s))

        self.logger.debug("Signal handlers configured")

    async def run(self) -> None:
        """
        Run the application until a shutdown signal is received.
        """
        try:
            await self.initialize()
            self.is_running = True

            self.engine.start()
            self._start_background_tasks()

            self.logger.info("Location health engine running")
            await self._stop_event.wait()

        except asyncio.CancelledError:
            self.logger.info("Application cancelled")
            raise
        finally:
            await self.shutdown()

    def _start_background_tasks(self) -> None:
        """Start periodic metrics reporting."""
        if self.config.enable_metrics:
            self.metrics_timer = RepeatingTimer(
                "metrics-report",
                self.config.metrics_interval_seconds,
                self._report_metrics,
            )
            self.metrics_timer.start()
            self.shutdown_tasks.append(self.metrics_timer.stop)
            self.logger.info("Background tasks started")

    async def _report_metrics(self) -> None:
        metrics = await self._collect_metrics()
        self.logger.info(f"System metrics: {metrics}")

    async def _collect_metrics(self) -> Dict[str, Any]:
        """Collect system metrics."""
        metrics: Dict[str, Any] = {
            'uptime_seconds': (datetime.now(timezone.utc) - self.startup_time).total_seconds() if self.startup_time else 0,
        }

        if self.engine:
            metrics.update(self.engine.get_status())
            metrics['completed_tasks'] = self.engine.dispatcher.completed_count
            metrics['failed_tasks'] = self.engine.dispatcher.failed_count
            metrics['cache'] = self.engine.cache.stats()

        if self.state_manager:
            metrics.update(await self.state_manager.get_metrics())

        return metrics

    async def shutdown(self) -> None:
        """
        Gracefully shutdown the application.

        Stops components in reverse order of initialization.
        """
        if not self.is_running:
            return

        self.logger.info("Initiating graceful shutdown...")
        self.is_running = False
        await self._run_shutdown_tasks()

        if self.startup_time:
            uptime = datetime.now(timezone.utc) - self.startup_time
            self.logger.info(f"Application shutdown complete. Uptime: {uptime}")
        else:
            self.logger.info("Application shutdown complete")

    async def _run_shutdown_tasks(self) -> None:
        while self.shutdown_tasks:
            shutdown_task = self.shutdown_tasks.pop()
            try:
                result = shutdown_task()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self.logger.error(f"Error during shutdown task: {e}", exc_info=True)

    def get_status(self) -> Dict[str, Any]:
        """
        Get current application status.

        Returns:
            Dictionary containing application status information
        """
        return {
            'running': self.is_running,
            'version': self.config.app_version,
            'environment': self.config.environment,
            'startup_time': self.startup_time.isoformat() if self.startup_time else None,
            'uptime_seconds': (datetime.now(timezone.utc) - self.startup_time).total_seconds() if self.startup_time else 0,
            'engine': self.engine.get_status() if self.engine else None,
        }


async def main():
    """Main entry point for the application."""
    app = Application()
    try:
        await app.run()
    except ApplicationError as e:
        print(f"Application failed: {e}")
        sys.exit(1)


def run_development():
    """Run application in development mode with debug settings."""
    import os
    os.environ['ENVIRONMENT'] = 'development'
    os.environ['DEBUG_MODE'] = 'true'

    asyncio.run(main())


def run_production():
    """Run application in production mode."""
    import os
    os.environ['ENVIRONMENT'] = 'production'
    os.environ['DEBUG_MODE'] = 'false'

    asyncio.run(main())


if __name__ == "__main__":
    if len(sys.argv) > 1:
        if sys.argv[1] == "dev":
            run_development()
        elif sys.argv[1] == "prod":
            run_production()
        else:
            print("Usage: python main.py [dev|prod]")
            sys.exit(1)
    else:
        run_development()


__all__ = ['Application', 'main', 'run_development', 'run_production']
