"""Tests for the control-plane config loader (pgcluster.yaml)."""

from pathlib import Path

import pytest

from pgcluster.config import ConfigError, ControlPlaneConfig, find_config, load_config

# --- find_config ---


class TestFindConfig:
    def test_finds_in_start_dir(self, tmp_path: Path):
        cfg = tmp_path / "pgcluster.yaml"
        cfg.write_text("base_domain: db.test\n", encoding="utf-8")
        assert find_config(tmp_path) == cfg

    def test_finds_in_parent(self, tmp_path: Path):
        cfg = tmp_path / "pgcluster.yaml"
        cfg.write_text("base_domain: db.test\n", encoding="utf-8")
        child = tmp_path / "sub" / "deep"
        child.mkdir(parents=True)
        assert find_config(child) == cfg

    def test_returns_none_when_missing(self, tmp_path: Path):
        assert find_config(tmp_path) is None

    def test_defaults_to_cwd(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert find_config() is None

    def test_ignores_directories_named_config(self, tmp_path: Path):
        """A directory named pgcluster.yaml should not match."""
        (tmp_path / "pgcluster.yaml").mkdir()
        assert find_config(tmp_path) is None


# --- load_config ---


class TestLoadConfig:
    def test_defaults_without_file(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config(environ={})
        assert config == ControlPlaneConfig()
        assert config.config_path is None
        assert config.reachability_attempts == 60
        assert config.storage_configured is False

    def test_explicit_path(self, tmp_path: Path):
        cfg = tmp_path / "pgcluster.yaml"
        cfg.write_text(
            "base_domain: db.test\n"
            "election_attempts: 10\n"
            "ssh_key_ids: [1234, deploy]\n",
            encoding="utf-8",
        )
        config = load_config(cfg, environ={})
        assert config.config_path == cfg.resolve()
        assert config.base_domain == "db.test"
        assert config.election_attempts == 10
        assert config.ssh_key_ids == ("1234", "deploy")

    def test_missing_explicit_path(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml", environ={})

    def test_relative_paths_resolved_against_file(self, tmp_path: Path):
        conf_dir = tmp_path / "etc"
        conf_dir.mkdir()
        cfg = conf_dir / "pgcluster.yaml"
        cfg.write_text("db_path: ../state/pgcluster.db\nssh_key_path: keys/id_ed25519\n", encoding="utf-8")
        config = load_config(cfg, environ={})
        assert config.db_path == str((tmp_path / "state" / "pgcluster.db").resolve())
        assert config.ssh_key_path == str((conf_dir / "keys" / "id_ed25519").resolve())

    def test_auto_discovery(self, tmp_path: Path, monkeypatch):
        (tmp_path / "pgcluster.yaml").write_text("worker_count: 8\n", encoding="utf-8")
        child = tmp_path / "work"
        child.mkdir()
        monkeypatch.chdir(child)
        assert load_config(environ={}).worker_count == 8

    def test_auto_discovery_disabled(self, tmp_path: Path, monkeypatch):
        (tmp_path / "pgcluster.yaml").write_text("worker_count: 8\n", encoding="utf-8")
        monkeypatch.chdir(tmp_path)
        assert load_config(auto_discover=False, environ={}).worker_count == 4

    def test_empty_file(self, tmp_path: Path):
        cfg = tmp_path / "pgcluster.yaml"
        cfg.write_text("", encoding="utf-8")
        assert load_config(cfg, environ={}).base_domain == "db.example.com"

    def test_not_a_mapping(self, tmp_path: Path):
        cfg = tmp_path / "pgcluster.yaml"
        cfg.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Expected a YAML mapping"):
            load_config(cfg, environ={})

    def test_unknown_keys(self, tmp_path: Path):
        cfg = tmp_path / "pgcluster.yaml"
        cfg.write_text("base_domain: db.test\nregsitry: ./actions\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Unknown config keys.*regsitry"):
            load_config(cfg, environ={})


# --- environment overrides ---


class TestEnvOverrides:
    def test_override_wins_over_file(self, tmp_path: Path):
        cfg = tmp_path / "pgcluster.yaml"
        cfg.write_text("base_domain: db.test\nquorum_attempts: 5\n", encoding="utf-8")
        config = load_config(
            cfg,
            environ={
                "PGCLUSTER_BASE_DOMAIN": "db.prod",
                "PGCLUSTER_QUORUM_ATTEMPTS": "12",
                "PGCLUSTER_QUORUM_INTERVAL": "0.5",
            },
        )
        assert config.base_domain == "db.prod"
        assert config.quorum_attempts == 12
        assert config.quorum_interval == 0.5

    def test_secrets_from_environment(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config(
            environ={
                "PGCLUSTER_STORAGE_ENDPOINT": "https://s3.test",
                "PGCLUSTER_STORAGE_ACCESS_KEY": "AK",
                "PGCLUSTER_STORAGE_SECRET_KEY": "s3-secret-value",
                "PGCLUSTER_CLOUD_TOKEN": "hcloud-token",
            }
        )
        assert config.storage_configured is True
        assert config.cloud_token == "hcloud-token"
        assert "hcloud-token" not in repr(config)
        assert "s3-secret-value" not in repr(config)

    def test_tuple_override(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config(environ={"PGCLUSTER_SSH_KEY_IDS": "1, 2,,3"})
        assert config.ssh_key_ids == ("1", "2", "3")

    def test_invalid_number(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ConfigError, match="PGCLUSTER_WORKER_COUNT"):
            load_config(environ={"PGCLUSTER_WORKER_COUNT": "many"})

    def test_process_environment_is_default(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("PGCLUSTER_LOG_LEVEL", "DEBUG")
        assert load_config().log_level == "DEBUG"

    def test_config_is_frozen(self):
        config = ControlPlaneConfig()
        with pytest.raises(AttributeError):
            config.db_path = "elsewhere"  # type: ignore[misc]
