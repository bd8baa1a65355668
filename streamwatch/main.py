import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import uvicorn

from .adapters import AdapterRegistry, build_registry
from .config import Settings, settings
from .database import Database
from .geolocation import Geolocator
from .history import HistoryDeriver
from .maintenance import CoverRepairer, DuplicateMerger, JobRunner, purge_stopped_sessions
from .monitor import ActivityMonitor
from .reconciler import SessionReconciler
from .sweep import StaleSweep

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def register_jobs(
    jobs: JobRunner, db: Database, config: Settings, registry: Optional[AdapterRegistry] = None
) -> None:
    merger = DuplicateMerger(db, config.merge_server_types_list)
    jobs.register(
        "merge-duplicates",
        "Merge Duplicates",
        merger.merge,
        interval_seconds=config.merge_interval_minutes * 60,
    )
    jobs.register(
        "purge-stopped-sessions",
        "Purge Stopped Sessions",
        lambda: purge_stopped_sessions(db, config.stopped_session_retention_hours),
        interval_seconds=3600,
    )
    if registry is not None and len(registry):
        jobs.register(
            "repair-covers",
            "Repair Covers",
            CoverRepairer(db, registry).repair,
            interval_seconds=config.cover_repair_interval_minutes * 60,
        )


class StreamwatchServer:
    def __init__(self, config: Settings = settings):
        self.config = config
        self._shutdown_event = asyncio.Event()
        self.db = Database(config.database_path_resolved)
        self.jobs = JobRunner()

    async def start(self) -> None:
        """Start the Streamwatch server."""
        from dashboard.app import create_app
        from dashboard.broadcaster import Broadcaster

        logger.info("Starting Streamwatch...")

        # Connect to database
        await self.db.connect()
        logger.info(f"Connected to database: {self.config.database_path}")

        registry = build_registry(self.config)
        await registry.test_connections()
        geolocator = Geolocator(
            self.db,
            base_url=self.config.geolocation_url,
            enabled=self.config.geolocation_enabled,
        )
        history = HistoryDeriver(self.db)
        broadcaster = Broadcaster()
        monitor = ActivityMonitor(
            self.db,
            registry,
            SessionReconciler(self.db, history, geolocator),
            StaleSweep.from_settings(self.db, history, self.config),
            poll_interval_seconds=self.config.poll_interval_seconds,
            adapter_timeout_seconds=self.config.adapter_timeout_seconds,
            broadcast=broadcaster.broadcast,
        )
        register_jobs(self.jobs, self.db, self.config, registry)

        # Setup signal handlers
        loop = asyncio.get_event_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self.shutdown()))

        await monitor.start()
        self.jobs.start()
        app = create_app(self.db, monitor=monitor, broadcaster=broadcaster, jobs=self.jobs)
        web_task = asyncio.create_task(self._run_web_server(app))

        logger.info(f"Dashboard available at http://localhost:{self.config.dashboard_port}")

        # Wait for shutdown
        await self._shutdown_event.wait()

        web_task.cancel()
        try:
            await web_task
        except asyncio.CancelledError:
            pass

        # Cleanup
        await monitor.stop()
        await self.jobs.stop()
        await registry.close()
        await geolocator.close()
        await self.db.close()
        logger.info("Streamwatch stopped")

    async def shutdown(self) -> None:
        """Signal shutdown."""
        logger.info("Shutting down...")
        self._shutdown_event.set()

    async def _run_web_server(self, app) -> None:
        """Run the FastAPI web server."""
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.dashboard_port,
            log_level="info",
        )
        server = uvicorn.Server(config)
        try:
            await server.serve()
        except asyncio.CancelledError:
            pass


async def run_merge(config: Settings) -> dict:
    """Run the duplicate merge once."""
    db = Database(config.database_path_resolved)
    await db.connect()
    try:
        return await DuplicateMerger(db, config.merge_server_types_list).merge()
    finally:
        await db.close()


async def run_repair_covers(config: Settings) -> dict:
    """Run the cover repair once against the configured servers."""
    db = Database(config.database_path_resolved)
    await db.connect()
    registry = build_registry(config)
    try:
        return await CoverRepairer(db, registry).repair()
    finally:
        await registry.close()
        await db.close()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Streamwatch - Media Server Activity Monitor")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Import command
    import_parser = subparsers.add_parser(
        "import", help="Import closed listening sessions logged by the servers"
    )
    import_parser.add_argument(
        "--days",
        type=int,
        default=30,
        help="Number of days to import (default: 30)",
    )
    subparsers.add_parser("merge-duplicates", help="Consolidate duplicate history entries")
    subparsers.add_parser("repair-covers", help="Refresh history cover art from the servers")

    args = parser.parse_args()

    if args.command == "merge-duplicates":
        result = asyncio.run(run_merge(settings))
        logger.info(f"Merged {result['merged']} of {result['duplicate_sets']} duplicate sets")
        return

    if not settings.configured_servers:
        logger.error("No media servers configured. Set SERVERS or a *_URL/*_API_KEY pair in .env.")
        sys.exit(1)

    if args.command == "repair-covers":
        for server_type, counts in asyncio.run(run_repair_covers(settings)).items():
            logger.info(f"Cover repair {server_type}: {counts}")
        return

    if args.command == "import":
        from .importer import run_import

        count = asyncio.run(run_import(settings, days=args.days))
        logger.info(f"Imported {count} listening sessions")
    else:
        server = StreamwatchServer()
        asyncio.run(server.start())


if __name__ == "__main__":
    main()
