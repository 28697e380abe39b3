import pytest

from relaybridge.proxy import config_loader


def test_load_proxy_config_creates_file(config_file):
    cfg = config_loader.load_proxy_config()

    assert config_file.exists()
    assert cfg.port == 8889
    assert cfg.streaming_mode == "real"
    assert cfg.max_retries == 3
    assert cfg.header_timeout_s == 1200.0
    assert cfg.config_file_path == str(config_file)


def test_sections_are_read(config_file):
    config_file.write_text(
        "\n".join(
            [
                "[server]",
                "port = 9100",
                "",
                "[streaming]",
                'streaming_mode = "fake"',
                "",
                "[retry]",
                "failure_threshold = 3",
                "immediate_switch_status_codes = [429, 200, 503, 429]",
                "",
                "[credentials]",
                "initial_auth_index = 2",
                "",
                "[worker]",
                'worker_command = ["node", "worker.js"]',
            ]
        )
    )

    cfg = config_loader.load_proxy_config()

    assert cfg.port == 9100
    assert cfg.streaming_mode == "fake"
    assert cfg.failure_threshold == 3
    assert cfg.immediate_switch_status_codes == [429, 503]
    assert cfg.initial_auth_index == 2
    assert cfg.worker_command == ["node", "worker.js"]


def test_update_config_file_writes_changes(config_file):
    cfg = config_loader.update_config_file({"port": 8201, "max_retries": 5})

    file_cfg = config_loader.load_file_config()

    assert file_cfg["port"] == 8201
    assert file_cfg["max_retries"] == 5
    assert cfg.port == 8201


def test_update_config_file_rejects_unknown_fields(config_file):
    with pytest.raises(KeyError):
        config_loader.update_config_file({"no_such_field": 1})


def test_env_overrides_take_precedence(config_file, monkeypatch):
    config_loader.update_config_file({"port": 8101})

    monkeypatch.setenv("RELAY_PORT", "9010")
    monkeypatch.setenv("RELAY_STREAMING_MODE", "fake")
    monkeypatch.setenv("RELAY_API_KEYS", "alpha, beta,,")
    monkeypatch.setenv("RELAY_IMMEDIATE_SWITCH_STATUS_CODES", "429,abc,503,302")
    monkeypatch.setenv("RELAY_WORKER_COMMAND", "node 'my worker.js' --headless")

    cfg = config_loader.load_proxy_config()
    file_cfg = config_loader.load_file_config()
    env_overrides = config_loader.list_env_overrides()

    assert file_cfg["port"] == 8101
    assert cfg.port == 9010
    assert cfg.streaming_mode == "fake"
    assert cfg.api_keys == ["alpha", "beta"]
    assert cfg.api_key_auth_enabled
    assert cfg.immediate_switch_status_codes == [429, 503]
    assert cfg.worker_command == ["node", "my worker.js", "--headless"]
    assert env_overrides["RELAY_PORT"] == "9010"


def test_invalid_values_are_normalised(config_file, monkeypatch):
    monkeypatch.setenv("RELAY_STREAMING_MODE", "sideways")
    monkeypatch.setenv("RELAY_MAX_RETRIES", "-1")
    monkeypatch.setenv("RELAY_FAILURE_THRESHOLD", "-4")

    cfg = config_loader.load_proxy_config()

    assert cfg.streaming_mode == "real"
    assert cfg.max_retries == 3
    assert cfg.failure_threshold == 0


def test_parse_status_codes():
    assert config_loader.parse_status_codes("429, 503 ,x,600,429") == [429, 503]
    assert config_loader.parse_status_codes([500, "404"]) == [500, 404]
    assert config_loader.parse_status_codes(None) == []


def test_string_worker_command_is_split_like_a_shell(config_file):
    cfg = config_loader.update_config_file(
        {"worker_command": "python 'my worker.py' --flag"}
    )

    assert cfg.worker_command == ["python", "my worker.py", "--flag"]
    assert config_loader.load_file_config()["worker_command"] == [
        "python",
        "my worker.py",
        "--flag",
    ]

    config_file.write_text('[worker]\nworker_command = "node worker.js --headless"\n')

    assert config_loader.load_proxy_config().worker_command == [
        "node",
        "worker.js",
        "--headless",
    ]
