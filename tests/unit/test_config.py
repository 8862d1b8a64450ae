"""Unit tests for config module."""

import pytest

from devicetrust.config import (
    AppCfg,
    DeviceCfg,
    FlowCfg,
    HttpCfg,
    ResetCfg,
    StorageCfg,
    load_config,
)


@pytest.fixture
def config_file(temp_dir):
    content = """
http:
  base_url: "https://auth.example.com/api/v1"
  request_timeout: 8

flow:
  redirect_delay: 0.5
  max_pin_attempts: 5
  default_country_code: "+65"

device:
  header_max_age_days: 7
  signing_secret: "s3cret"

storage:
  backend: "redis"
  redis_host: "cache"
  namespace: "tabs"

reset:
  loop_threshold: 4
"""
    path = temp_dir / "devicetrust.yml"
    path.write_text(content)
    return str(path)


@pytest.mark.unit
class TestLoadConfig:
    """Test configuration loading."""

    def test_load_config_sections(self, config_file):
        cfg = load_config(config_file)

        assert isinstance(cfg, AppCfg)
        assert cfg.http.base_url == "https://auth.example.com/api/v1"
        assert cfg.http.request_timeout == 8.0
        assert cfg.flow.redirect_delay == 0.5
        assert cfg.flow.max_pin_attempts == 5
        assert cfg.flow.default_country_code == "+65"
        assert cfg.device.header_max_age_days == 7
        assert cfg.device.signing_secret == "s3cret"
        assert cfg.storage.backend == "redis"
        assert cfg.storage.redis_host == "cache"
        assert cfg.storage.namespace == "tabs"
        assert cfg.reset.loop_threshold == 4
        assert cfg.reset.loop_window == 5.0

    def test_missing_file_is_created_with_defaults(self, temp_dir):
        path = temp_dir / "nested" / "devicetrust.yml"

        cfg = load_config(str(path))

        assert path.exists()
        assert "DeviceTrust Configuration" in path.read_text()
        assert cfg.flow.redirect_delay == 1.5
        assert cfg.flow.dashboard_path == "/dashboard"
        assert cfg.storage.backend == "memory"

    def test_env_vars_fill_keys_missing_from_yaml(self, temp_dir, monkeypatch):
        path = temp_dir / "minimal.yml"
        path.write_text("flow:\n  max_pin_attempts: 3\n")
        monkeypatch.setenv("DEVICETRUST_BASE_URL", "https://env.example.com")
        monkeypatch.setenv("DEVICETRUST_REDIRECT_DELAY", "0")
        monkeypatch.setenv("DEVICETRUST_WEBAUTHN_ENABLED", "yes")
        monkeypatch.setenv("DEVICETRUST_SIGNING_SECRET", "from-env")
        monkeypatch.setenv("REDIS_PORT", "6380")

        cfg = load_config(str(path))

        assert cfg.http.base_url == "https://env.example.com"
        assert cfg.flow.redirect_delay == 0.0
        assert cfg.flow.webauthn_enabled is True
        assert cfg.device.signing_secret == "from-env"
        assert cfg.storage.redis_port == 6380

    def test_yaml_wins_over_env(self, config_file, monkeypatch):
        monkeypatch.setenv("DEVICETRUST_BASE_URL", "https://env.example.com")

        cfg = load_config(config_file)

        assert cfg.http.base_url == "https://auth.example.com/api/v1"

    def test_invalid_env_int_raises(self, temp_dir, monkeypatch):
        path = temp_dir / "empty.yml"
        path.write_text("")
        monkeypatch.setenv("REDIS_PORT", "not-a-port")

        with pytest.raises(ValueError, match="REDIS_PORT must be an integer"):
            load_config(str(path))

    def test_non_mapping_section_rejected(self, temp_dir):
        path = temp_dir / "bad.yml"
        path.write_text("flow: [1, 2]\n")

        with pytest.raises(ValueError, match="Config section 'flow' must be a mapping"):
            load_config(str(path))


@pytest.mark.unit
class TestConfigValidation:
    """Dataclass constraint checks."""

    def test_flow_timeouts_must_be_positive(self):
        with pytest.raises(ValueError, match="safety_timeout"):
            FlowCfg(safety_timeout=0)

    def test_redirect_delay_may_be_zero(self):
        assert FlowCfg(redirect_delay=0).redirect_delay == 0

    def test_negative_redirect_delay_rejected(self):
        with pytest.raises(ValueError, match="redirect_delay"):
            FlowCfg(redirect_delay=-1)

    def test_unsupported_country_code_rejected(self):
        with pytest.raises(ValueError, match="default_country_code"):
            FlowCfg(default_country_code="+1")

    def test_storage_backend_normalized(self):
        assert StorageCfg(backend=" Redis ").backend == "redis"

    def test_unknown_storage_backend_rejected(self):
        with pytest.raises(ValueError, match="backend"):
            StorageCfg(backend="sqlite")

    def test_header_max_age_ms(self):
        assert DeviceCfg(header_max_age_days=1).header_max_age_ms == 86_400_000

    def test_empty_base_url_rejected(self):
        with pytest.raises(ValueError, match="base_url"):
            HttpCfg(base_url="")

    def test_loop_window_must_be_positive(self):
        with pytest.raises(ValueError, match="loop_window"):
            ResetCfg(loop_window=0)
