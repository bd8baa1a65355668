import pytest

from streamwatch.adapters import AdapterRegistry
from streamwatch.config import Settings
from streamwatch.main import register_jobs
from streamwatch.maintenance import JobRunner


class _Adapter:
    def __init__(self, name, server_type="jellyfin", result=None, error=None):
        self.name = name
        self.server_type = server_type
        self.result = result
        self.error = error

    async def test_connection(self):
        if self.error:
            raise self.error
        return self.result


@pytest.mark.asyncio
async def test_connection_checks_never_raise():
    registry = AdapterRegistry(
        [
            _Adapter("Jellyfin", result={"success": True, "message": "Connected to Jellyfin 10.9"}),
            _Adapter("Plex", "plex", result={"success": False, "error": "401 Unauthorized"}),
            _Adapter("Audiobookshelf", "audiobookshelf", error=RuntimeError("boom")),
        ]
    )

    results = await registry.test_connections()

    assert results["Jellyfin"]["success"] is True
    assert results["Plex"] == {"success": False, "error": "401 Unauthorized"}
    assert results["Audiobookshelf"] == {"success": False, "error": "boom"}


def test_repair_covers_job_registered_with_servers():
    config = Settings(cover_repair_interval_minutes=45)
    jobs = JobRunner()

    register_jobs(jobs, db=None, config=config, registry=AdapterRegistry([_Adapter("Plex", "plex")]))

    assert set(jobs.jobs) == {"merge-duplicates", "purge-stopped-sessions", "repair-covers"}
    assert jobs.jobs["repair-covers"].interval_seconds == 2700


def test_repair_covers_job_needs_servers():
    jobs = JobRunner()

    register_jobs(jobs, db=None, config=Settings(), registry=AdapterRegistry())

    assert "repair-covers" not in jobs.jobs
