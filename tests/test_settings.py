from hammr.settings import load_settings


def test_defaults_without_config(tmp_path, monkeypatch):
    monkeypatch.setenv("HAMMR_CONFIG", str(tmp_path / "missing.toml"))
    monkeypatch.delenv("YOUTUBE_API_KEY", raising=False)

    cfg = load_settings()

    assert cfg.polling.min_interval_ms == 10_000
    assert cfg.polling.error_backoff_ms == 60_000
    assert cfg.polling.max_not_found == 5
    assert cfg.feed.api_key is None
    assert cfg.feed.cache_ttl_success_seconds == 1800
    assert cfg.logs.per_job_entries == 100
    assert cfg.database.url.startswith("sqlite+aiosqlite:///")


def test_toml_overrides_and_env_key(tmp_path, monkeypatch):
    path = tmp_path / "hammr.toml"
    path.write_text(
        """
[polling]
error_backoff_ms = 90000

[logs]
directory = "/var/log/hammr"
level = "DEBUG"
""",
        encoding="utf-8",
    )
    monkeypatch.setenv("HAMMR_CONFIG", str(path))
    monkeypatch.setenv("YOUTUBE_API_KEY", "from-env")

    cfg = load_settings()

    assert cfg.polling.error_backoff_ms == 90_000
    assert cfg.polling.initial_interval_ms == 10_000
    assert cfg.logs.directory == "/var/log/hammr"
    assert cfg.feed.api_key == "from-env"


def test_file_key_wins_over_env(tmp_path, monkeypatch):
    path = tmp_path / "hammr.toml"
    path.write_text('[feed]\napi_key = "from-file"\n', encoding="utf-8")
    monkeypatch.setenv("HAMMR_CONFIG", str(path))
    monkeypatch.setenv("YOUTUBE_API_KEY", "from-env")

    assert load_settings().feed.api_key == "from-file"
