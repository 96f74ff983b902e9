"""
Configuration loading tests
"""
from dataclasses import fields
from pathlib import Path

import pytest
import yaml

from pan.core.config import Settings, load_settings
from pan.services.proof_validator import ProofPolicy

PROJECT_ROOT = Path(__file__).resolve().parent


@pytest.fixture(autouse=True)
def no_env_config(monkeypatch):
    monkeypatch.delenv("PAN_CONFIG", raising=False)
    monkeypatch.delenv("PAN_SIGNER_ALLOWED_ORIGINS", raising=False)


def write_config(tmp_path, data, name="pan.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestDefaults:
    """Settings without any config file"""

    def test_defaults(self):
        settings = load_settings()
        assert settings.cfg_file_used is None
        assert settings.session_cookie_name == "session_id"
        assert settings.session_ttl == 86400
        assert settings.nonce_ttl == 300
        assert settings.nonce_bytes == 32
        assert settings.signer_timeout_ms == 10000
        assert settings.log_level == "INFO"
        assert "http://localhost:3000" in settings.allowed_origins

    def test_default_proof_policy(self):
        assert load_settings().proof_policy() == ProofPolicy()

    def test_every_field_is_loaded(self):
        settings = load_settings()
        names = [f.name for f in fields(Settings) if f.name != "cfg_file_used"]
        assert all(getattr(settings, name) is not None for name in names)


class TestOverrides:
    """YAML files and environment"""

    def test_explicit_path_merges_over_defaults(self, tmp_path):
        path = write_config(tmp_path, {
            "proof": {"max_age_ms": 1000},
            "logging": {"level": "debug"},
        })
        settings = load_settings(str(path))
        assert settings.cfg_file_used == str(path)
        assert settings.proof_max_age_ms == 1000
        assert settings.clock_skew_ms == 2000
        assert settings.log_level == "DEBUG"
        policy = settings.proof_policy()
        assert policy.max_age_ms == 1000
        assert policy.min_trajectory_points == 3

    def test_pan_config_env(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"nonce": {"ttl": 60}}, name="custom.yaml")
        monkeypatch.setenv("PAN_CONFIG", str(path))
        settings = load_settings()
        assert settings.nonce_ttl == 60
        assert settings.cfg_file_used == str(path)

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "absent.yaml"))

    def test_missing_pan_config(self, monkeypatch):
        monkeypatch.setenv("PAN_CONFIG", "definitely-not-here.yaml")
        with pytest.raises(FileNotFoundError):
            load_settings()

    def test_env_substitution_splits_origins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PAN_SIGNER_ALLOWED_ORIGINS", "https://app.example, https://admin.example")
        path = write_config(tmp_path, {"signer": {"allowed_origins": "${PAN_SIGNER_ALLOWED_ORIGINS}"}})
        settings = load_settings(str(path))
        assert settings.signer_allowed_origins == ["https://app.example", "https://admin.example"]

    def test_example_config_loads(self):
        """The example works as-is, with no environment set"""
        settings = load_settings(str(PROJECT_ROOT / "pan.example.yaml"))
        assert settings.signer_origin == "http://localhost:3001"
        assert settings.signer_allowed_origins == ["http://localhost:3000", "http://127.0.0.1:3000"]
        assert settings.proof_policy() == ProofPolicy()
        assert not any("${" in origin for origin in settings.signer_allowed_origins + settings.allowed_origins)


class TestPaths:
    """Database path handling"""

    def test_relative_db_path_is_anchored(self, tmp_path):
        settings = load_settings(str(write_config(tmp_path, {"db": {"path": "data/pan.db"}})))
        assert Path(settings.db_path).is_absolute()
        assert settings.db_path == str(PROJECT_ROOT / "data" / "pan.db")

    def test_memory_db_is_kept(self, tmp_path):
        settings = load_settings(str(write_config(tmp_path, {"db": {"path": ":memory:"}})))
        assert settings.db_path == ":memory:"


class TestCookies:
    """Secure flag on the session cookie"""

    def test_dev_cookie(self):
        assert load_settings().https_only is False

    def test_production_cookie(self, tmp_path):
        path = write_config(tmp_path, {"session": {"dev_allow_insecure_cookie": False}})
        assert load_settings(str(path)).https_only is True
