"""Tests for boardsync.toml handling."""

from pathlib import Path

import pytest

from boardsync.config import (
    ProjectConfig,
    ensure_state_dir,
    get_config_value,
    list_config,
    load_project_config,
    load_project_config_or_default,
    set_config_value,
)


class TestLoadProjectConfig:
    def test_load_full_toml(self, tmp_path):
        (tmp_path / "boardsync.toml").write_text(
            '[storage]\npath = "state/boards.json"\n\n'
            '[discovery]\ncli = "/opt/arduino-cli"\npoll_interval = 5\ntimeout = 30\n\n'
            '[logging]\nlevel = "debug"\n'
        )
        config = load_project_config(tmp_path)
        assert config.storage.path == "state/boards.json"
        assert config.discovery.cli == "/opt/arduino-cli"
        assert config.discovery.poll_interval == 5.0
        assert config.discovery.timeout == 30.0
        assert config.logging.level == "DEBUG"

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_project_config(tmp_path)

    def test_empty_toml(self, tmp_path):
        (tmp_path / "boardsync.toml").write_text("")
        config = load_project_config(tmp_path)
        assert config.storage.path == ".boardsync/state.json"
        assert config.discovery.cli == "arduino-cli"
        assert config.discovery.poll_interval == 2.0
        assert config.logging.level == "WARNING"

    def test_or_default(self, tmp_path):
        assert load_project_config_or_default(tmp_path) == ProjectConfig()


class TestStoragePath:
    def test_relative_to_project(self, tmp_path):
        assert ProjectConfig().storage_path(tmp_path) == tmp_path / ".boardsync" / "state.json"

    def test_absolute(self, tmp_path):
        config = ProjectConfig()
        config.storage.path = str(tmp_path / "elsewhere.json")
        assert config.storage_path("/somewhere") == tmp_path / "elsewhere.json"


class TestGetConfigValue:
    def test_dotted_key(self, tmp_path):
        (tmp_path / "boardsync.toml").write_text("[discovery]\npoll_interval = 1.5\n")
        assert get_config_value(tmp_path, "discovery.poll_interval") == 1.5

    def test_missing_key_returns_none(self, tmp_path):
        (tmp_path / "boardsync.toml").write_text("[discovery]\n")
        assert get_config_value(tmp_path, "discovery.cli") is None

    def test_missing_file_returns_none(self, tmp_path):
        assert get_config_value(tmp_path, "discovery.cli") is None


class TestSetConfigValue:
    def test_creates_file(self, tmp_path):
        set_config_value(tmp_path, "logging.level", "INFO")
        assert (tmp_path / "boardsync.toml").read_text() == '[logging]\nlevel = "INFO"\n'

    def test_updates_existing_key(self, tmp_path):
        toml = tmp_path / "boardsync.toml"
        toml.write_text('[discovery]\npoll_interval = 2.0\ncli = "arduino-cli"\n')
        set_config_value(tmp_path, "discovery.poll_interval", "0.5")
        assert get_config_value(tmp_path, "discovery.poll_interval") == 0.5
        assert get_config_value(tmp_path, "discovery.cli") == "arduino-cli"

    def test_adds_key_to_existing_section(self, tmp_path):
        toml = tmp_path / "boardsync.toml"
        toml.write_text('[discovery]\ncli = "arduino-cli"\n\n[logging]\nlevel = "INFO"\n')
        set_config_value(tmp_path, "discovery.timeout", "20")
        assert get_config_value(tmp_path, "discovery.timeout") == 20
        assert get_config_value(tmp_path, "logging.level") == "INFO"

    def test_adds_new_section(self, tmp_path):
        (tmp_path / "boardsync.toml").write_text('[logging]\nlevel = "INFO"\n')
        set_config_value(tmp_path, "storage.path", "state.json")
        assert get_config_value(tmp_path, "storage.path") == "state.json"

    def test_undotted_key_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            set_config_value(tmp_path, "level", "INFO")

    def test_unknown_key_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown config key"):
            set_config_value(tmp_path, "discovery.baud_rate", "115200")
        assert not (tmp_path / "boardsync.toml").exists()

    def test_number_required(self, tmp_path):
        with pytest.raises(ValueError, match="must be a number"):
            set_config_value(tmp_path, "discovery.poll_interval", "often")

    def test_numbers_written_as_floats(self, tmp_path):
        set_config_value(tmp_path, "discovery.timeout", "30")
        assert "timeout = 30.0" in (tmp_path / "boardsync.toml").read_text()
        assert load_project_config(tmp_path).discovery.timeout == 30.0

    def test_log_level_normalized(self, tmp_path):
        set_config_value(tmp_path, "logging.level", "debug")
        assert get_config_value(tmp_path, "logging.level") == "DEBUG"
        with pytest.raises(ValueError, match="logging.level must be one of"):
            set_config_value(tmp_path, "logging.level", "chatty")

    def test_keeps_comments(self, tmp_path):
        toml = tmp_path / "boardsync.toml"
        toml.write_text('# boards on the bench\n[discovery]\ncli = "arduino-cli"')
        set_config_value(tmp_path, "discovery.cli", "/opt/arduino-cli")
        assert toml.read_text() == '# boards on the bench\n[discovery]\ncli = "/opt/arduino-cli"\n'


class TestListConfig:
    def test_flattens_sections(self, tmp_path):
        (tmp_path / "boardsync.toml").write_text('[discovery]\ncli = "arduino-cli"\n\n[logging]\nlevel = "INFO"\n')
        assert list_config(tmp_path) == {"discovery.cli": "arduino-cli", "logging.level": "INFO"}

    def test_no_file(self, tmp_path):
        assert list_config(tmp_path) == {}


class TestEnsureStateDir:
    def test_creates_dir_with_gitignore(self, tmp_path):
        state_dir = ensure_state_dir(tmp_path / ".boardsync")
        assert state_dir.is_dir()
        assert (state_dir / ".gitignore").read_text() == "*\n"

    def test_keeps_existing_gitignore(self, tmp_path):
        state_dir = tmp_path / ".boardsync"
        state_dir.mkdir()
        (state_dir / ".gitignore").write_text("custom\n")
        ensure_state_dir(Path(state_dir))
        assert (state_dir / ".gitignore").read_text() == "custom\n"
