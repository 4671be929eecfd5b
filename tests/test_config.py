from certregistry.config import DEFAULT_RPC_URL, Settings


def test_defaults(monkeypatch):
    for name in ("BLOCKCHAIN_RPC_URLS", "BLOCKCHAIN_RPC_URL", "SERVER_PORT", "REGISTRY_DATABASE_URL", "DATA_DIR"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)

    assert settings.server_port == 3001
    assert settings.rpc_probe_timeout_ms == 5000
    assert settings.rpc_candidates == [DEFAULT_RPC_URL]
    assert settings.database_url == "sqlite+aiosqlite:///data/registry.db"


def test_rpc_list_wins_over_single_url(monkeypatch):
    monkeypatch.setenv("BLOCKCHAIN_RPC_URLS", "http://a, ,http://b,http://a")
    monkeypatch.setenv("BLOCKCHAIN_RPC_URL", "http://single")
    assert Settings(_env_file=None).rpc_candidates == ["http://a", "http://b", "http://a"]


def test_single_url(monkeypatch):
    monkeypatch.delenv("BLOCKCHAIN_RPC_URLS", raising=False)
    monkeypatch.setenv("BLOCKCHAIN_RPC_URL", "http://single")
    assert Settings(_env_file=None).rpc_candidates == ["http://single"]


def test_blank_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("SERVER_PORT", "")
    monkeypatch.setenv("RETRY_ATTEMPTS", " ")
    settings = Settings(_env_file=None)
    assert settings.server_port == 3001
    assert settings.retry_attempts == 3


def test_database_override(monkeypatch):
    monkeypatch.setenv("REGISTRY_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    assert Settings(_env_file=None).database_url == "sqlite+aiosqlite:///:memory:"
