"""Typed provider configuration and per-conversation options.

Models store their credentials as a JSON blob and conversations store their
options as a JSON blob. Both are parsed here, at the completion boundary,
into tagged structures discriminated on the provider name.
"""

import json
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..config import CLAUDE_MODEL, DEFAULT_MAX_TOKENS, DEFAULT_TEMPERATURE, OPENAI_BASE_URL
from ..data.models import Model, NewModel
from ..errors import ProviderConfigError

PROVIDER_OPENAI = "OpenAI"
PROVIDER_AZURE = "Azure"
PROVIDER_CLAUDE = "Claude"
SUPPORTED_PROVIDERS = (PROVIDER_OPENAI, PROVIDER_AZURE, PROVIDER_CLAUDE)


class OpenAIConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: Literal["OpenAI"] = PROVIDER_OPENAI
    api_key: str = Field(min_length=1)
    model: str = Field(min_length=1)
    base_url: str = OPENAI_BASE_URL


class AzureConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: Literal["Azure"] = PROVIDER_AZURE
    api_key: str = Field(min_length=1)
    endpoint: str = Field(min_length=1)
    api_version: str = Field(min_length=1)
    deployment_id: str = Field(min_length=1)


class ClaudeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: Literal["Claude"] = PROVIDER_CLAUDE
    model: str = CLAUDE_MODEL


ProviderConfig = Annotated[
    OpenAIConfig | AzureConfig | ClaudeConfig, Field(discriminator="provider")
]


class _BaseOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    system_prompt: str | None = None


class _ChatOptions(_BaseOptions):
    """Sampling parameters of the chat-completions API."""

    temperature: float = Field(DEFAULT_TEMPERATURE, ge=0, le=2)
    max_tokens: int = Field(DEFAULT_MAX_TOKENS, gt=0)
    top_p: float = Field(1.0, ge=0, le=1)
    frequency_penalty: float = Field(0.0, ge=-2, le=2)
    presence_penalty: float = Field(0.0, ge=-2, le=2)


class OpenAIOptions(_ChatOptions):
    provider: Literal["OpenAI"] = PROVIDER_OPENAI


class AzureOptions(_ChatOptions):
    provider: Literal["Azure"] = PROVIDER_AZURE


class ClaudeOptions(_BaseOptions):
    """The agent picks its own sampling, so only the prompt and turn budget apply."""

    provider: Literal["Claude"] = PROVIDER_CLAUDE
    max_turns: int = Field(1, gt=0)


ProviderOptions = Annotated[
    OpenAIOptions | AzureOptions | ClaudeOptions, Field(discriminator="provider")
]

_config_adapter = TypeAdapter(ProviderConfig)
_options_adapter = TypeAdapter(ProviderOptions)


def _load_object(blob: str, what: str) -> dict:
    if not blob or not blob.strip():
        return {}
    try:
        data = json.loads(blob)
    except json.JSONDecodeError as e:
        raise ProviderConfigError(f"Invalid {what}: {e}") from e
    if not isinstance(data, dict):
        raise ProviderConfigError(f"Invalid {what}: expected a JSON object")
    return data


def _tag(data: dict, provider: str, what: str) -> dict:
    if provider not in SUPPORTED_PROVIDERS:
        raise ProviderConfigError(f"Unsupported provider: {provider}")
    tagged = data.get("provider", provider)
    if tagged != provider:
        raise ProviderConfigError(
            f"Invalid {what}: provider {tagged!r} does not match {provider!r}"
        )
    return {**data, "provider": provider}


def parse_config(model: Model | NewModel) -> OpenAIConfig | AzureConfig | ClaudeConfig:
    """Validate a stored model's credentials for its provider."""
    data = _tag(_load_object(model.config, "model config"), model.provider, "model config")
    try:
        return _config_adapter.validate_python(data)
    except ValidationError as e:
        raise ProviderConfigError(f"Invalid model config for {model.provider}: {e}") from e


def parse_options(blob: str, provider: str) -> OpenAIOptions | AzureOptions | ClaudeOptions:
    """Validate a conversation's options; an empty blob yields provider defaults."""
    data = _tag(_load_object(blob, "conversation options"), provider, "conversation options")
    try:
        return _options_adapter.validate_python(data)
    except ValidationError as e:
        raise ProviderConfigError(f"Invalid conversation options for {provider}: {e}") from e


def default_options(provider: str) -> OpenAIOptions | AzureOptions | ClaudeOptions:
    return parse_options("", provider)
