from pathlib import Path

from agentmeter.config import DEFAULT_DB_PATH, Config


class TestConfigFromEnv:
    def test_defaults(self, monkeypatch: "object") -> "None":
        for name in (
            "AGENTMETER_DB_PATH",
            "AGENTMETER_BYTES_PER_TOKEN",
            "AGENTMETER_DEBOUNCE_MS",
            "AGENTMETER_BILLING_MODE",
            "ANTHROPIC_ADMIN_API_KEY",
        ):
            monkeypatch.delenv(name, raising=False)
        config = Config.from_env()
        assert config.db_path == DEFAULT_DB_PATH
        assert config.bytes_per_token == 3.5
        assert config.debounce_ms == 50
        assert config.billing_mode == "api"
        assert config.anthropic_admin_api_key == ""

    def test_reads_env_vars(self, monkeypatch: "object") -> "None":
        monkeypatch.setenv("AGENTMETER_DB_PATH", "/tmp/meter.db")
        monkeypatch.setenv("AGENTMETER_BYTES_PER_TOKEN", "4")
        monkeypatch.setenv("AGENTMETER_DEBOUNCE_MS", "100")
        monkeypatch.setenv("AGENTMETER_BILLING_MODE", "max")
        monkeypatch.setenv("ANTHROPIC_ADMIN_API_KEY", "sk-ant-admin-test")
        config = Config.from_env()
        assert config.db_path == Path("/tmp/meter.db")
        assert config.bytes_per_token == 4.0
        assert config.debounce_ms == 100
        assert config.billing_mode == "max"
        assert config.anthropic_admin_api_key == "sk-ant-admin-test"


class TestAuditEnabled:
    def test_enabled_when_key_set(self) -> "None":
        config = Config(anthropic_admin_api_key="sk-ant-admin-test")
        assert config.audit_enabled is True

    def test_disabled_when_key_empty(self) -> "None":
        config = Config(anthropic_admin_api_key="")
        assert config.audit_enabled is False
