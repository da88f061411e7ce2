import pytest

from spectral_lan_controller.config import (
    CONFIG_VERSION,
    MIN_SUPPORTED_CONFIG_VERSION,
    Config,
    ManualDevice,
    load_config,
)


def test_default_config_passes_validation() -> None:
    config = Config()
    assert config.config_version == CONFIG_VERSION
    assert config.slider_debounce_seconds == 0.3
    assert config.restore_default_pwm == 128


@pytest.mark.parametrize(
    "field,value,error",
    [
        ("slider_debounce_seconds", -0.1, "slider_debounce_seconds"),
        ("restore_default_pwm", 256, "restore_default_pwm"),
        ("monitor_interval", 0.0, "monitor_interval"),
        ("api_port", 0, "api_port"),
        ("log_format", "xml", "log_format"),
        ("rooms_log_level", "chatty", "rooms_log_level"),
        ("discovery_concurrency", 0, "discovery_concurrency"),
        ("discovery_timeout", 0.0, "discovery_timeout"),
        ("profile_paths", ("data/profile.json",), "profile_paths"),
        ("discovery_subnets", ("192.168.300.0/24",), "discovery_subnets"),
    ],
)
def test_bounds_enforced(field: str, value: object, error: str) -> None:
    with pytest.raises(ValueError, match=error):
        Config(**{field: value})


def test_future_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="newer than supported"):
        Config(config_version=CONFIG_VERSION + 1)


def test_ancient_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="too old"):
        Config(config_version=MIN_SUPPORTED_CONFIG_VERSION - 1)


def test_duplicate_manual_devices_rejected() -> None:
    with pytest.raises(ValueError, match="duplicate"):
        Config(manual_devices=(ManualDevice(id="a", ip="10.0.0.1"), ManualDevice(id="a", ip="10.0.0.2")))


def test_logging_dict_masks_secrets() -> None:
    config = Config(api_key="secret-key", api_bearer_token="token")
    logged = config.logging_dict()
    assert logged["api_key"] == "***REDACTED***"
    assert logged["api_bearer_token"] == "***REDACTED***"


def test_sources_layer_file_env_and_cli(tmp_path, monkeypatch) -> None:
    config_file = tmp_path / "controller.toml"
    config_file.write_text(
        "\n".join(
            [
                "api-port = 9000",
                "slider_debounce_seconds = 0.5",
                "monitor_enabled = true",
                '[[manual_devices]]',
                'id = "shelf"',
                'ip = "10.0.0.20"',
                'model = "X"',
            ]
        )
    )
    monkeypatch.setenv("SPECTRAL_LAN_SLIDER_DEBOUNCE_SECONDS", "0.7")
    monkeypatch.setenv("SPECTRAL_LAN_LOG_LEVEL", "debug")

    config = load_config(
        [
            "--config",
            str(config_file),
            "--api-port",
            "9100",
            "--no-monitor",
            "--manual-device",
            "id=bench,ip=10.0.0.21,name=Bench",
        ]
    )

    assert config.api_port == 9100
    assert config.slider_debounce_seconds == 0.7
    assert config.log_level == "DEBUG"
    assert config.monitor_enabled is False
    assert config.manual_devices == (ManualDevice(id="bench", ip="10.0.0.21", name="Bench"),)


def test_file_manual_devices_survive_without_cli_override(tmp_path) -> None:
    config_file = tmp_path / "controller.toml"
    config_file.write_text('[[manual_devices]]\nid = "shelf"\nip = "10.0.0.20"\n')

    config = load_config(["--config", str(config_file), "--dry-run"])

    assert config.dry_run is True
    assert config.manual_devices == (ManualDevice(id="shelf", ip="10.0.0.20"),)


def test_unknown_file_key_rejected(tmp_path) -> None:
    config_file = tmp_path / "controller.toml"
    config_file.write_text("universe = 1\n")

    with pytest.raises(ValueError, match="Unknown configuration key"):
        load_config(["--config", str(config_file)])


def test_missing_config_file_reported(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(["--config", str(tmp_path / "missing.toml")])


def test_discovery_and_profile_lists_from_env_and_cli(monkeypatch) -> None:
    monkeypatch.setenv("SPECTRAL_LAN_DISCOVERY_SUBNETS", "192.168.4.0/24, 10.0.0.0/28")
    monkeypatch.setenv("SPECTRAL_LAN_DISCOVERY_MODEL_KEYWORDS", "FluorTronix,")

    config = load_config(
        [
            "--profile-path",
            "/data/grow.json",
            "--profile-path",
            "/data/data.xlsx",
            "--discover-on-start",
            "--discovery-concurrency",
            "8",
        ]
    )

    assert config.discovery_subnets == ("192.168.4.0/24", "10.0.0.0/28")
    assert config.discovery_model_keywords == ("FluorTronix",)
    assert config.profile_paths == ("/data/grow.json", "/data/data.xlsx")
    assert config.discovery_on_start is True
    assert config.discovery_concurrency == 8
    assert Config().profile_paths == ("/data/profile.json", "/data/data.xlsx")
