from pathlib import Path

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class ServerConfig(BaseModel):
    """A configured media server."""

    name: str
    type: str
    url: str
    api_key: str
    enabled: bool = True


def _split_csv(value: str) -> list[str]:
    return [part.strip().lower() for part in value.split(",") if part.strip()]


class Settings(BaseSettings):
    database_path: str = "./data/streamwatch.db"
    dashboard_port: int = 8085

    servers: list[ServerConfig] = []
    jellyfin_url: str = ""
    jellyfin_api_key: str = ""
    emby_url: str = ""
    emby_api_key: str = ""
    plex_url: str = ""
    plex_token: str = ""
    audiobookshelf_url: str = ""
    audiobookshelf_api_key: str = ""
    sappho_url: str = ""
    sappho_api_key: str = ""

    poll_interval_seconds: int = 30
    adapter_timeout_seconds: float = 10.0
    paused_timeout_seconds: int = 30
    missing_grace_seconds: int = 60
    missing_grace_server_types: str = "plex"
    self_managed_server_types: str = "audiobookshelf"
    liveness_inactivity_seconds: int = 300

    merge_interval_minutes: int = 15
    merge_server_types: str = "audiobookshelf"
    stopped_session_retention_hours: int = 24
    cover_repair_interval_minutes: int = 30

    geolocation_enabled: bool = True
    geolocation_url: str = "http://ip-api.com/json"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def database_path_resolved(self) -> Path:
        """Get resolved database path."""
        path = Path(self.database_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    @property
    def missing_grace_server_types_list(self) -> list[str]:
        return _split_csv(self.missing_grace_server_types)

    @property
    def self_managed_server_types_list(self) -> list[str]:
        return _split_csv(self.self_managed_server_types)

    @property
    def merge_server_types_list(self) -> list[str]:
        return _split_csv(self.merge_server_types)

    @property
    def configured_servers(self) -> list[ServerConfig]:
        """Enabled servers, including ones given through the single-server variables."""
        servers = [server for server in self.servers if server.enabled]
        legacy = [
            ("Jellyfin", "jellyfin", self.jellyfin_url, self.jellyfin_api_key),
            ("Emby", "emby", self.emby_url, self.emby_api_key),
            ("Plex", "plex", self.plex_url, self.plex_token),
            (
                "Audiobookshelf",
                "audiobookshelf",
                self.audiobookshelf_url,
                self.audiobookshelf_api_key,
            ),
            ("Sappho", "sappho", self.sappho_url, self.sappho_api_key),
        ]
        known = {(server.type, server.url.rstrip("/")) for server in servers}
        for name, server_type, url, api_key in legacy:
            if not url or not api_key:
                continue
            if (server_type, url.rstrip("/")) in known:
                continue
            servers.append(ServerConfig(name=name, type=server_type, url=url, api_key=api_key))
        return servers


settings = Settings()
