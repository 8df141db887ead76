"""Unit tests for shelfwise.engine.config — ShelfwiseConfig and loading."""

import pytest

from shelfwise.engine.config import (
    HierarchyConfig,
    ShelfwiseConfig,
    get_config,
    load_config,
    reset_config,
)
from shelfwise.engine.errors import ConfigError


class TestShelfwiseConfig:
    """Test ShelfwiseConfig Pydantic model."""

    def test_defaults(self):
        cfg = ShelfwiseConfig()
        assert cfg.environment == "dev"
        assert cfg.database.url == "sqlite:///shelfwise.db"
        assert cfg.hierarchy.name_max_length == 100
        assert cfg.hierarchy.move_conflict_retries == 2
        assert cfg.security.grant_sweep_cron == "0 3 * * *"
        assert cfg.security.allow_past_expiry is False
        assert cfg.activity.enabled is True
        assert cfg.logging.level == "INFO"

    def test_valid_environments(self):
        for env in ("dev", "staging", "prod"):
            assert ShelfwiseConfig(environment=env).environment == env

    def test_invalid_environment(self):
        with pytest.raises(ValueError, match="dev/staging/prod"):
            ShelfwiseConfig(environment="test")

    def test_log_level_is_uppercased(self):
        cfg = ShelfwiseConfig(logging={"level": "debug"})
        assert cfg.logging.level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValueError):
            ShelfwiseConfig(logging={"level": "chatty"})

    def test_invalid_cron(self):
        with pytest.raises(ValueError, match="5 fields"):
            ShelfwiseConfig(security={"grant_sweep_cron": "0 3 *"})

    def test_negative_retries_rejected(self):
        with pytest.raises(ValueError):
            HierarchyConfig(move_conflict_retries=-1)


class TestLoadConfig:

    def test_defaults_without_file(self):
        cfg = load_config()
        assert cfg == ShelfwiseConfig()

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(
            "environment: staging\n"
            "hierarchy:\n"
            "  name_max_length: 40\n",
            encoding="utf-8",
        )
        cfg = load_config(str(path))
        assert cfg.environment == "staging"
        assert cfg.hierarchy.name_max_length == 40

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_env_var_path(self, tmp_path, monkeypatch):
        path = tmp_path / "env.yaml"
        path.write_text("environment: prod\n", encoding="utf-8")
        monkeypatch.setenv("SHELFWISE_CONFIG", str(path))
        assert load_config().environment == "prod"

    def test_discovers_file_in_parent(self, tmp_path, monkeypatch):
        (tmp_path / "shelfwise.yaml").write_text("environment: staging\n", encoding="utf-8")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)
        assert load_config().environment == "staging"

    def test_database_url_override(self, tmp_path, monkeypatch):
        path = tmp_path / "db.yaml"
        path.write_text("database:\n  url: sqlite:///file.db\n  echo: true\n", encoding="utf-8")
        monkeypatch.setenv("SHELFWISE_DATABASE_URL", "postgresql://u:p@db/shelf")
        cfg = load_config(str(path))
        assert cfg.database.url == "postgresql://u:p@db/shelf"
        assert cfg.database.echo is True

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("environment: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(str(path))

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(path))

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "bad_values.yaml"
        path.write_text("environment: local\n", encoding="utf-8")
        with pytest.raises(ConfigError) as exc_info:
            load_config(str(path))
        assert exc_info.value.context["errors"]

    def test_get_config_caches(self):
        first = get_config()
        assert get_config() is first
        reset_config()
        assert get_config() is not first
