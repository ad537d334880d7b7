from pathlib import Path

import pytest

from hotel_tv_core.config import (
    CONFIG_VERSION,
    MIN_SUPPORTED_CONFIG_VERSION,
    Config,
)


def test_default_config_passes_validation() -> None:
    config = Config()
    assert config.config_version == CONFIG_VERSION
    assert config.api_port == 3000
    assert config.pms_sync_interval == 300.0
    assert config.device_offline_after == 600.0


@pytest.mark.parametrize(
    "field,value,error",
    [
        ("api_port", 0, "api_port"),
        ("pms_request_timeout", 0.0, "pms_request_timeout"),
        ("notification_interval", 0.0, "notification_interval"),
        ("realtime_stale_multiplier", 0.5, "realtime_stale_multiplier"),
    ],
)
def test_bounds_enforced(field: str, value: object, error: str) -> None:
    with pytest.raises(ValueError, match=error):
        Config(**{field: value})


def test_unknown_log_format_rejected() -> None:
    with pytest.raises(ValueError, match="log_format"):
        Config(log_format="xml")


def test_future_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="newer than supported"):
        Config(config_version=CONFIG_VERSION + 1)


def test_ancient_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="too old"):
        Config(config_version=MIN_SUPPORTED_CONFIG_VERSION - 1)


def test_logging_dict_masks_secrets() -> None:
    config = Config(jwt_secret="a-very-long-signing-secret-for-admin-tokens")
    logged = config.logging_dict()
    assert logged["jwt_secret"] == "***REDACTED***"
    assert "a-very-long" not in str(logged)


def test_sources_layer_file_env_then_cli(tmp_path, monkeypatch) -> None:
    config_file = tmp_path / "hotel.toml"
    config_file.write_text(
        'api_port = 4000\npms_sync_interval = 120\nlog_level = "debug"\n', encoding="utf-8"
    )
    monkeypatch.setenv("HOTEL_TV_PMS_SYNC_INTERVAL", "90")
    monkeypatch.setenv("HOTEL_TV_SCHEDULER_ENABLED", "false")

    config = Config.from_sources(
        ["--config", str(config_file), "--api-port", "5000", "--db-path", str(tmp_path / "x.db")]
    )

    assert config.api_port == 5000
    assert config.pms_sync_interval == 90.0
    assert config.log_level == "DEBUG"
    assert config.scheduler_enabled is False
    assert config.db_path == Path(tmp_path / "x.db")


def test_cli_switches_disable_features(monkeypatch) -> None:
    for key in ("HOTEL_TV_SCHEDULER_ENABLED", "HOTEL_TV_API_DOCS", "HOTEL_TV_CONFIG"):
        monkeypatch.delenv(key, raising=False)
    config = Config.from_sources(["--no-scheduler", "--no-api-docs", "--migrate-only"])
    assert config.scheduler_enabled is False
    assert config.api_docs is False
    assert config.migrate_only is True


def test_unknown_file_key_rejected(tmp_path) -> None:
    config_file = tmp_path / "hotel.toml"
    config_file.write_text("not_a_setting = 1\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Unknown configuration key"):
        Config.from_sources(["--config", str(config_file)])
