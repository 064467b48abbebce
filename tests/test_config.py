"""Configuration boundary tests: key resolution, validation, redaction."""

from __future__ import annotations

import pytest

from llmux.config import SUPPORTED_PROVIDERS, CacheConfig, Config, api_key_env_var
from llmux.errors import ConfigurationError
from llmux.providers import (
    AnthropicProvider,
    GeminiProvider,
    MockProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    ProviderRegistry,
)
from llmux.retry import RetryPolicy
from tests.conftest import FakeProvider

pytestmark = pytest.mark.unit


def test_config_creation_with_mock_mode() -> None:
    """Config can be created with mock mode (no API key needed)."""
    cfg = Config(provider="gemini", model="gemini-2.5-flash", use_mock=True)

    assert cfg.provider == "gemini"
    assert cfg.api_key is None
    assert cfg.enable_caching is True
    assert cfg.cache == CacheConfig()
    assert cfg.retry is None


def test_config_auto_resolves_api_key_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """API key should be auto-resolved from the provider's variable."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")

    cfg = Config(provider="anthropic", model="claude-sonnet-4-5")

    assert cfg.api_key == "env-key"


def test_explicit_api_key_takes_precedence(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")

    cfg = Config(provider="openai", model="gpt-4.1-mini", api_key="explicit-key")

    assert cfg.api_key == "explicit-key"


def test_missing_api_key_raises_clear_error() -> None:
    with pytest.raises(ConfigurationError, match="API key required") as exc:
        Config(provider="groq", model="llama-3.3-70b")

    assert exc.value.hint is not None
    assert "GROQ_API_KEY" in exc.value.hint


def test_local_provider_needs_no_key() -> None:
    cfg = Config(provider="ollama", model="llama3")

    assert cfg.api_key is None
    assert api_key_env_var("ollama") is None


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"provider": "bedrock", "model": "m"}, "Unknown provider"),
        ({"provider": "openai", "model": ""}, "model is required"),
        ({"provider": "openai", "model": "m", "timeout_s": 0}, "timeout_s"),
    ],
)
def test_invalid_config_is_rejected(kwargs: dict, match: str) -> None:
    with pytest.raises(ConfigurationError, match=match):
        Config(use_mock=True, **kwargs)


def test_string_forms_redact_the_api_key() -> None:
    cfg = Config(provider="openai", model="gpt-4.1-mini", api_key="sk-very-secret")

    assert "sk-very-secret" not in str(cfg)
    assert "sk-very-secret" not in repr(cfg)
    assert "[REDACTED]" in repr(cfg)


def test_config_is_frozen() -> None:
    cfg = Config(provider="openai", model="m", use_mock=True)

    with pytest.raises(AttributeError):
        cfg.model = "other"  # type: ignore[misc]


def test_every_supported_provider_has_a_key_mapping() -> None:
    assert "ollama" in SUPPORTED_PROVIDERS
    assert api_key_env_var("grok") == "XAI_API_KEY"
    assert api_key_env_var("nope") is None


def test_retry_policy_is_carried_unchanged() -> None:
    policy = RetryPolicy(max_attempts=2)

    assert Config(provider="openai", model="m", use_mock=True, retry=policy).retry is policy


# =============================================================================
# ProviderRegistry
# =============================================================================


@pytest.mark.parametrize(
    ("provider", "expected"),
    [
        ("openai", OpenAIProvider),
        ("anthropic", AnthropicProvider),
        ("gemini", GeminiProvider),
        ("grok", OpenAICompatibleProvider),
        ("mistral", OpenAICompatibleProvider),
        ("ollama", OpenAICompatibleProvider),
    ],
)
def test_default_registry_builds_each_provider(provider: str, expected: type) -> None:
    cfg = Config(provider=provider, model="some-model", api_key="k")  # type: ignore[arg-type]

    built = ProviderRegistry().create(cfg)

    assert isinstance(built, expected)
    assert built.model_id == "some-model"


def test_mock_mode_short_circuits_the_factories() -> None:
    registry = ProviderRegistry({})

    built = registry.create(Config(provider="openai", model="m", use_mock=True))

    assert isinstance(built, MockProvider)


def test_with_factory_returns_a_new_registry() -> None:
    base = ProviderRegistry({})
    fake = FakeProvider()
    extended = base.with_factory("openai", lambda _config, _client: fake)

    assert base.names == []
    assert extended.names == ["openai"]
    assert extended.create(Config(provider="openai", model="m", api_key="k")) is fake
    with pytest.raises(ConfigurationError, match="No provider factory"):
        base.create(Config(provider="openai", model="m", api_key="k"))
