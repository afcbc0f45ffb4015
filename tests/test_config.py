import pytest
import yaml

from stepwise.config import (
    CONFIG_FILE_ENV,
    DEFAULT_TOOLS,
    AgentSettings,
    CacheSettings,
    Config,
    MCPServerConfig,
    ModelEntry,
    ModelProvider,
    RetrySettings,
    default_config_path,
    load_config,
    mask_secret,
    resolve_value,
    save_config,
)
from stepwise.exceptions import ConfigurationError

SAMPLE_CONFIG = """
agents:
  stepwise:
    model: default_model
    max_steps: 12
    tools: [bash, task_done]

model_providers:
  openai:
    provider: openai
    api_key: sk-file-key-123456
  local:
    provider: Ollama
    base_url: http://localhost:11434

models:
  default_model:
    model: gpt-4o
    model_provider: openai
    max_tokens: 2048
    temperature: 0.2
    stop_sequences: ["END"]
  local_model:
    model: llama3.1
    model_provider: local

retry:
  max_retries: 2
  base_delay: 0.5

cache:
  enabled: false
  max_size: 10
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in [
        "OPENAI_API_KEY",
        "OPENAI_BASE_URL",
        "ANTHROPIC_API_KEY",
        "OLLAMA_API_KEY",
        "OLLAMA_BASE_URL",
        CONFIG_FILE_ENV,
    ]:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "stepwise.yaml"
    path.write_text(SAMPLE_CONFIG)
    return path


def minimal_config(**provider_kwargs) -> Config:
    provider_kwargs.setdefault("provider", "openai")
    return Config(
        agents={"stepwise": AgentSettings(model="m")},
        model_providers={"p": ModelProvider(**provider_kwargs)},
        models={"m": ModelEntry(model="gpt-4o", model_provider="p")},
    )


class TestLoadConfig:
    def test_load(self, config_file):
        config = load_config(config_file)

        agent = config.agent_settings("stepwise")
        assert agent.max_steps == 12
        assert agent.tools == ["bash", "task_done"]
        assert config.models["default_model"].max_tokens == 2048
        assert config.retry.max_retries == 2
        assert config.retry.base_delay == 0.5
        assert config.cache.enabled is False
        assert config.cache.max_size == 10

    def test_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        config = load_config(path)
        assert config.agents == {}
        assert config.retry == RetrySettings()
        assert config.cache == CacheSettings()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="failed to read config file"):
            load_config(tmp_path / "missing.yaml")

    def test_bad_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("agents: [unclosed")
        with pytest.raises(ConfigurationError, match="failed to parse"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="must contain a mapping"):
            load_config(path)

    def test_invalid_field(self, tmp_path):
        path = tmp_path / "invalid.yaml"
        path.write_text("agents:\n  stepwise:\n    max_steps: 0\n")
        with pytest.raises(ConfigurationError, match="invalid config file"):
            load_config(path)

    def test_path_from_environment(self, config_file, monkeypatch):
        monkeypatch.setenv(CONFIG_FILE_ENV, str(config_file))
        assert default_config_path() == config_file
        assert "stepwise" in load_config().agents

    def test_save_round_trip(self, config_file, tmp_path):
        config = load_config(config_file)
        target = tmp_path / "out" / "saved.yaml"
        save_config(config, target)
        assert load_config(target) == config


class TestConfigCheck:
    def test_valid(self, config_file):
        load_config(config_file).check()

    @pytest.mark.parametrize(
        "config, message",
        [
            (Config(), "at least one agent"),
            (Config(agents={"a": AgentSettings(model="m")}), "at least one model provider"),
            (
                Config(
                    agents={"a": AgentSettings(model="m")},
                    model_providers={"p": ModelProvider(provider="openai", api_key="k")},
                ),
                "at least one model must be configured",
            ),
        ],
    )
    def test_empty_sections(self, config, message):
        with pytest.raises(ConfigurationError, match=message):
            config.check()

    def test_agent_without_model(self):
        config = minimal_config(api_key="k")
        config.agents["other"] = AgentSettings()
        with pytest.raises(ConfigurationError, match="agent 'other' must specify a model"):
            config.check()

    def test_dangling_model_reference(self):
        config = minimal_config(api_key="k")
        config.agents["stepwise"] = AgentSettings(model="ghost")
        with pytest.raises(ConfigurationError, match="undefined model 'ghost'"):
            config.check()

    def test_dangling_provider_reference(self):
        config = minimal_config(api_key="k")
        config.models["m"] = ModelEntry(model="gpt-4o", model_provider="ghost")
        with pytest.raises(ConfigurationError, match="undefined provider 'ghost'"):
            config.check()

    def test_missing_api_key(self):
        with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
            minimal_config().check()

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        minimal_config().check()

    def test_credentials_not_required(self):
        minimal_config().check(require_credentials=False)

    def test_keyless_provider(self):
        minimal_config(provider="ollama").check()

    def test_unconfigured_mcp_server(self):
        config = minimal_config(api_key="k")
        config.allow_mcp_servers = ["files"]
        with pytest.raises(ConfigurationError, match="MCP server 'files'"):
            config.check()

        config.mcp_servers["files"] = MCPServerConfig(command="mcp-files")
        config.check()


class TestResolveModel:
    def test_from_file(self, config_file):
        settings = load_config(config_file).resolve_model()
        assert settings.model == "gpt-4o"
        assert settings.provider == "openai"
        assert settings.api_key == "sk-file-key-123456"
        assert settings.max_tokens == 2048
        assert settings.temperature == 0.2
        assert settings.stop_sequences == ("END",)

    def test_environment_beats_file(self, config_file, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("OPENAI_BASE_URL", "https://proxy.example/v1")
        settings = load_config(config_file).resolve_model()
        assert settings.api_key == "sk-env"
        assert settings.base_url == "https://proxy.example/v1"

    def test_cli_beats_environment(self, config_file, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        settings = load_config(config_file).resolve_model(api_key="sk-cli", model="gpt-4o-mini")
        assert settings.api_key == "sk-cli"
        assert settings.model == "gpt-4o-mini"

    def test_provider_override_by_entry_name(self, config_file):
        settings = load_config(config_file).resolve_model(provider="local", model="qwen2.5")
        assert settings.provider == "ollama"
        assert settings.base_url == "http://localhost:11434"
        assert settings.model == "qwen2.5"

    def test_provider_created_on_the_fly(self, config_file):
        settings = load_config(config_file).resolve_model(provider="anthropic", api_key="k")
        assert settings.provider == "anthropic"
        assert settings.api_key == "k"

    def test_unknown_agent(self, config_file):
        with pytest.raises(ConfigurationError, match="agent configuration 'ghost' not found"):
            load_config(config_file).resolve_model("ghost")

    def test_model_settings_by_name(self, config_file):
        settings = load_config(config_file).model_settings("local_model")
        assert settings.model == "llama3.1"
        assert settings.api_key is None

    def test_settings_are_frozen(self, config_file):
        settings = load_config(config_file).resolve_model()
        with pytest.raises(Exception):
            settings.model = "other"

    def test_api_key_hidden_from_repr(self, config_file):
        settings = load_config(config_file).resolve_model()
        assert "sk-file-key-123456" not in repr(settings)


class TestHelpers:
    def test_resolve_value_priority(self, monkeypatch):
        assert resolve_value("cli", "file", "STEPWISE_TEST_VALUE") == "cli"
        assert resolve_value(None, "file", "STEPWISE_TEST_VALUE") == "file"
        monkeypatch.setenv("STEPWISE_TEST_VALUE", "env")
        assert resolve_value(None, "file", "STEPWISE_TEST_VALUE") == "env"
        assert resolve_value("", "file", "STEPWISE_TEST_VALUE") == "env"

    def test_mask_secret(self):
        assert mask_secret(None) == ""
        assert mask_secret("short") == "****"
        assert mask_secret("sk-1234567890abcd") == "sk-1...abcd"

    def test_to_yaml_masks_keys(self, config_file):
        text = load_config(config_file).to_yaml()
        assert "sk-file-key-123456" not in text
        data = yaml.safe_load(text)
        assert data["model_providers"]["openai"]["api_key"] == "sk-f...3456"

    def test_default_tools(self):
        assert AgentSettings().tools == DEFAULT_TOOLS
        assert AgentSettings().tools is not DEFAULT_TOOLS
