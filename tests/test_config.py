from streamwatch.config import ServerConfig, Settings


def test_legacy_variables_become_servers():
    settings = Settings(
        jellyfin_url="http://jf.test:8096",
        jellyfin_api_key="abc123",
        plex_url="http://plex.test:32400",
        plex_token="token",
    )
    servers = settings.configured_servers
    assert [(s.type, s.url, s.api_key) for s in servers] == [
        ("jellyfin", "http://jf.test:8096", "abc123"),
        ("plex", "http://plex.test:32400", "token"),
    ]


def test_legacy_variables_do_not_duplicate_listed_servers():
    settings = Settings(
        servers=[
            ServerConfig(name="Main", type="jellyfin", url="http://jf.test:8096/", api_key="abc"),
            ServerConfig(name="Old", type="emby", url="http://emby.test", api_key="x", enabled=False),
        ],
        jellyfin_url="http://jf.test:8096",
        jellyfin_api_key="abc",
    )
    servers = settings.configured_servers
    assert [s.name for s in servers] == ["Main"]


def test_url_without_key_is_ignored():
    settings = Settings(audiobookshelf_url="http://abs.test")
    assert all(s.type != "audiobookshelf" for s in settings.configured_servers)


def test_comma_separated_lists():
    settings = Settings(
        missing_grace_server_types=" Plex, ,emby ",
        merge_server_types="audiobookshelf",
        self_managed_server_types="",
    )
    assert settings.missing_grace_server_types_list == ["plex", "emby"]
    assert settings.merge_server_types_list == ["audiobookshelf"]
    assert settings.self_managed_server_types_list == []


def test_engine_defaults():
    settings = Settings()
    assert settings.poll_interval_seconds == 30
    assert settings.paused_timeout_seconds == 30
    assert settings.missing_grace_seconds == 60
    assert settings.missing_grace_server_types_list == ["plex"]
    assert settings.self_managed_server_types_list == ["audiobookshelf"]
    assert settings.liveness_inactivity_seconds == 300


def test_database_path_creates_parent(tmp_path):
    settings = Settings(database_path=str(tmp_path / "nested" / "streamwatch.db"))
    path = settings.database_path_resolved
    assert path.parent.is_dir()
