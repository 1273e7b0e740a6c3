import pytest

from checkhub.config import ConfigError, interval_label, load_config

ENV_KEYS = [
    "CONFIG_PATH", "CHECK_POLL_INTERVAL_SECONDS", "CHECK_CONCURRENCY", "CHECK_NODE_ID",
    "CHECK_LEASE_TTL_SECONDS", "CHECK_RUN_ON_START", "DB_PATH", "HISTORY_RETENTION_DAYS",
    "OFFICIAL_STATUS_CHECK_INTERVAL_SECONDS", "OFFICIAL_STATUS_ENABLED",
    "API_HOST", "API_PORT", "LOG_LEVEL", "LOG_FORMAT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_file(tmp_path):
    config = load_config(str(tmp_path / "missing.yaml"))

    assert config.poller.interval_seconds == 60
    assert config.poller.concurrency == 5
    assert config.history.retention_days == 30
    assert config.official_status.interval_seconds == 300
    assert config.lease_ttl_seconds == 180
    assert config.targets is None
    assert config.poller.node_id


def test_yaml_values_and_targets(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "poller:\n"
        "  interval_seconds: 120\n"
        "  node_id: node-1\n"
        "history:\n"
        "  db_path: /tmp/x.db\n"
        "targets:\n"
        "  - id: gpt\n"
        "    name: GPT\n"
        "    type: openai\n"
        "    model: gpt-4o-mini\n"
    )

    config = load_config(str(path))

    assert config.poller.interval_seconds == 120
    assert config.poller.node_id == "node-1"
    assert config.history.db_path == "/tmp/x.db"
    assert config.targets[0]["id"] == "gpt"


def test_env_overrides_yaml(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("poller:\n  interval_seconds: 120\n")
    monkeypatch.setenv("CHECK_POLL_INTERVAL_SECONDS", "90")
    monkeypatch.setenv("CHECK_RUN_ON_START", "true")
    monkeypatch.setenv("CHECK_NODE_ID", "from-env")

    config = load_config(str(path))

    assert config.poller.interval_seconds == 90
    assert config.poller.run_on_start is True
    assert config.poller.node_id == "from-env"


@pytest.mark.parametrize("env, value, attr, expected", [
    ("CHECK_POLL_INTERVAL_SECONDS", "5", ("poller", "interval_seconds"), 15),
    ("CHECK_POLL_INTERVAL_SECONDS", "9999", ("poller", "interval_seconds"), 600),
    ("CHECK_CONCURRENCY", "0", ("poller", "concurrency"), 1),
    ("CHECK_CONCURRENCY", "100", ("poller", "concurrency"), 20),
    ("HISTORY_RETENTION_DAYS", "1", ("history", "retention_days"), 7),
    ("HISTORY_RETENTION_DAYS", "1000", ("history", "retention_days"), 365),
    ("OFFICIAL_STATUS_CHECK_INTERVAL_SECONDS", "10", ("official_status", "interval_seconds"), 60),
    ("OFFICIAL_STATUS_CHECK_INTERVAL_SECONDS", "7200", ("official_status", "interval_seconds"), 3600),
])
def test_values_clamped(env, value, attr, expected, tmp_path, monkeypatch):
    monkeypatch.setenv(env, value)

    config = load_config(str(tmp_path / "missing.yaml"))

    section, name = attr
    assert getattr(getattr(config, section), name) == expected


@pytest.mark.parametrize("yaml_text, attr, expected", [
    ("history:\n  max_points_per_target: 0\n", ("history", "max_points_per_target"), 1),
    ("history:\n  max_points_per_target: 50000\n", ("history", "max_points_per_target"), 1000),
    ("official_status:\n  timeout: 0\n", ("official_status", "timeout"), 1),
    ("official_status:\n  timeout: 600\n", ("official_status", "timeout"), 120),
])
def test_yaml_values_clamped(yaml_text, attr, expected, tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml_text)

    config = load_config(str(path))

    section, name = attr
    assert getattr(getattr(config, section), name) == expected


def test_invalid_env_value_ignored(tmp_path, monkeypatch):
    monkeypatch.setenv("CHECK_CONCURRENCY", "lots")

    config = load_config(str(tmp_path / "missing.yaml"))

    assert config.poller.concurrency == 5


def test_lease_ttl_clamped(tmp_path, monkeypatch):
    monkeypatch.setenv("CHECK_LEASE_TTL_SECONDS", "5")
    assert load_config(str(tmp_path / "missing.yaml")).lease_ttl_seconds == 30

    monkeypatch.setenv("CHECK_LEASE_TTL_SECONDS", "")
    monkeypatch.setenv("CHECK_POLL_INTERVAL_SECONDS", "600")
    assert load_config(str(tmp_path / "missing.yaml")).lease_ttl_seconds == 1800


def test_unreadable_file_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("poller: [unclosed\n")

    with pytest.raises(ConfigError):
        load_config(str(path))


def test_interval_label():
    assert interval_label(60) == "1 min"
    assert interval_label(45) == "45 s"
