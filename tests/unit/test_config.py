"""Tests for configuration loading."""

from cadence.config import load_config
from cadence.transports import InMemoryTransport, get_transport
from cadence.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
database_url: sqlite:///var/lib/cadence.db
processor:
  concurrency: 8
  step_timeout: 12.5
retention:
  instance_days: 90
"""
    )
    monkeypatch.setenv("CADENCE_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.database_url == "sqlite:///var/lib/cadence.db"
    assert config.processor.concurrency == 8
    assert config.processor.step_timeout == 12.5
    assert config.processor.visibility_timeout == 300.0
    assert config.retention.instance_days == 90
    assert config.retention.job_days == 30


def test_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///from-file.db\n")
    monkeypatch.setenv("CADENCE_CONFIG", str(config_path))
    monkeypatch.setenv("CADENCE_DATABASE_URL", "postgresql://db/cadence")
    monkeypatch.setenv("CADENCE_DEFINITIONS", "/etc/cadence/workflows")

    config = load_config()
    assert config.database_url == "postgresql://db/cadence"
    assert config.definitions_path == "/etc/cadence/workflows"


def test_defaults_without_file():
    config = load_config()
    assert config.database_url is None
    assert config.transport.backend == "inmemory"
    assert config.processor.concurrency == 4
    assert config.log_level == "INFO"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("CADENCE_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_get_transport_defaults_to_inmemory():
    assert isinstance(get_transport(), InMemoryTransport)
