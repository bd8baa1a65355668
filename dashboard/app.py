from typing import Optional

from fastapi import FastAPI

from streamwatch.database import Database
from streamwatch.maintenance import JobRunner
from streamwatch.monitor import ActivityMonitor

from .broadcaster import Broadcaster
from .routes import router


def create_app(
    db: Database,
    monitor: Optional[ActivityMonitor] = None,
    broadcaster: Optional[Broadcaster] = None,
    jobs: Optional[JobRunner] = None,
) -> FastAPI:
    """Build the dashboard API around the running engine's objects."""
    app = FastAPI(title="Streamwatch", description="Media server activity monitor")
    app.state.db = db
    app.state.monitor = monitor
    app.state.broadcaster = broadcaster or Broadcaster()
    app.state.jobs = jobs
    app.include_router(router)
    return app
