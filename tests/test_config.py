# =============================================================================
# Configuration Tests
# =============================================================================

import pytest

from kestrel_tui.config import Config, ConfigError, get_xdg_config_home, get_xdg_state_home


@pytest.fixture(autouse=True)
def xdg_home(temp_dir, monkeypatch):
    """Keep every XDG directory inside the test's temp dir."""
    for name in ("XDG_CONFIG_HOME", "XDG_DATA_HOME", "XDG_CACHE_HOME", "XDG_STATE_HOME"):
        monkeypatch.setenv(name, str(temp_dir / name.lower()))
    return temp_dir


def test_defaults():
    config = Config()
    assert config.sync.check_interval_seconds == 300
    assert config.sync.max_attempts == 5
    assert config.sync.refresh_margin_seconds == 120
    assert config.input.prefix_timeout_ms == 500
    assert config.ui.theme == "dark"


def test_xdg_paths_follow_environment(xdg_home):
    assert get_xdg_config_home() == xdg_home / "xdg_config_home" / "kestrel-tui"
    assert Config().log_file_path() == get_xdg_state_home() / "kestrel.log"


def test_missing_file_gives_defaults():
    config = Config.load()
    assert config == Config()
    assert get_xdg_config_home().is_dir()


def test_save_and_load_round_trip(config, temp_dir):
    path = temp_dir / "config.toml"
    config.ui.theme = "light"
    config.logging.level = "DEBUG"
    config.save(path)

    loaded = Config.load(path)
    assert loaded == config


def test_partial_file_keeps_defaults(temp_dir):
    path = temp_dir / "config.toml"
    path.write_text(
        '[account]\n'
        'email = "me@gmail.com"\n'
        '\n'
        '[sync]\n'
        'check_interval_seconds = 60\n'
        '\n'
        '[logging]\n'
        'level = "debug"\n'
    )
    config = Config.load(path)
    assert config.account.email == "me@gmail.com"
    assert config.sync.check_interval_seconds == 60
    assert config.sync.max_attempts == 5
    assert config.logging.level == "DEBUG"


def test_invalid_toml(temp_dir):
    path = temp_dir / "config.toml"
    path.write_text("[account\nemail = ")
    with pytest.raises(ConfigError):
        Config.load(path)


def test_invalid_number(temp_dir):
    path = temp_dir / "config.toml"
    path.write_text('[sync]\nmax_attempts = "many"\n')
    with pytest.raises(ConfigError):
        Config.load(path)


def test_validate_reports_missing_account_fields():
    config = Config()
    config.account.email = "me@gmail.com"
    with pytest.raises(ConfigError) as excinfo:
        config.validate()
    assert "client_id, client_secret" in str(excinfo.value)


def test_validate_checks_ranges(config):
    config.validate()
    config.sync.max_attempts = 0
    with pytest.raises(ConfigError):
        config.validate()


def test_to_account(config):
    account = config.account.to_account()
    assert account.email == "me@gmail.com"
    assert account.display_name == "Me"
    assert account.imap_host == "imap.gmail.com"
    assert account.keyring_service == "kestrel-tui:me@gmail.com"
