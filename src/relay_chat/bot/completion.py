import asyncio
import json
import logging
import time

import httpx
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    ResultMessage,
    TextBlock,
)

from ..config import COMPLETION_TIMEOUT_SECS
from ..data.models import ConversationOptions, Message, Model
from ..errors import CompletionError, ReplyCancelledError
from .providers import (
    AzureConfig,
    ClaudeConfig,
    ClaudeOptions,
    OpenAIConfig,
    default_options,
    parse_config,
    parse_options,
)

logger = logging.getLogger(__name__)


class CancellationToken:
    """Per-run stop flag, checked by the client between streamed chunks."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ReplyCancelledError("Reply was stopped")


def _error_cause(provider: str, status_code: int, body: str) -> str:
    try:
        detail = json.loads(body)["error"]["message"]
    except (ValueError, KeyError, TypeError):
        detail = body.strip()[:200] or "no details"
    return f"{provider} returned HTTP {status_code}: {detail}"


def _delta_text(data: str) -> str:
    try:
        chunk = json.loads(data)
        choices = chunk.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("delta") or {}).get("content") or ""
    except (ValueError, AttributeError, LookupError, TypeError) as e:
        raise CompletionError(f"Malformed stream chunk: {data[:100]}") from e


class CompletionClient:
    """Sends the latest user message to the conversation's provider.

    The provider call streams internally; callers get the assembled reply
    text or a CompletionError. Nothing is retried here.
    """

    def __init__(self, http: httpx.AsyncClient | None = None) -> None:
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=COMPLETION_TIMEOUT_SECS)

    async def complete(
        self,
        message: Message,
        options: ConversationOptions,
        model: Model,
        token: CancellationToken | None = None,
    ) -> str:
        config = parse_config(model)
        opts = parse_options(options.options, config.provider)
        return await self._complete(message.content, opts, config, token or CancellationToken())

    async def complete_with_model(
        self, message: Message, model: Model, token: CancellationToken | None = None
    ) -> str:
        """Complete with the provider's default options."""
        config = parse_config(model)
        opts = default_options(config.provider)
        return await self._complete(message.content, opts, config, token or CancellationToken())

    async def _complete(self, prompt: str, options, config, token: CancellationToken) -> str:
        t0 = time.time()
        if isinstance(config, ClaudeConfig):
            text = await self._complete_claude(prompt, options, config, token)
        else:
            text = await self._complete_chat(prompt, options, config, token)
        logger.info(
            "%s completion: %d chars in %dms",
            config.provider,
            len(text),
            round((time.time() - t0) * 1000),
        )
        return text

    def _chat_request(self, prompt: str, options, config) -> tuple[str, dict, dict]:
        messages = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})
        body = {
            "messages": messages,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "top_p": options.top_p,
            "frequency_penalty": options.frequency_penalty,
            "presence_penalty": options.presence_penalty,
            "stream": True,
        }

        if isinstance(config, AzureConfig):
            url = (
                f"{config.endpoint.rstrip('/')}/openai/deployments/{config.deployment_id}"
                f"/chat/completions?api-version={config.api_version}"
            )
            return url, {"api-key": config.api_key}, body

        body["model"] = config.model
        url = f"{config.base_url.rstrip('/')}/chat/completions"
        return url, {"Authorization": f"Bearer {config.api_key}"}, body

    async def _complete_chat(
        self, prompt: str, options, config: OpenAIConfig | AzureConfig, token: CancellationToken
    ) -> str:
        url, headers, body = self._chat_request(prompt, options, config)
        parts = []
        try:
            async with self._http.stream("POST", url, json=body, headers=headers) as response:
                if response.status_code >= 400:
                    raw = await response.aread()
                    raise CompletionError(
                        _error_cause(
                            config.provider, response.status_code, raw.decode(errors="replace")
                        )
                    )
                async for line in response.aiter_lines():
                    token.raise_if_cancelled()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if data == "[DONE]":
                        break
                    parts.append(_delta_text(data))
        except httpx.HTTPError as e:
            raise CompletionError(f"Request to {config.provider} failed: {e}") from e
        return "".join(parts)

    async def _complete_claude(
        self, prompt: str, options: ClaudeOptions, config: ClaudeConfig, token: CancellationToken
    ) -> str:
        sdk_options = ClaudeAgentOptions(
            system_prompt=options.system_prompt,
            model=config.model,
            max_turns=options.max_turns,
        )
        parts = []
        try:
            async with ClaudeSDKClient(options=sdk_options) as client:
                await client.query(prompt)
                async for message in client.receive_response():
                    token.raise_if_cancelled()
                    if isinstance(message, AssistantMessage):
                        for block in message.content:
                            if isinstance(block, TextBlock) and block.text:
                                parts.append(block.text)
                    elif isinstance(message, ResultMessage) and message.is_error:
                        raise CompletionError(f"Claude returned an error: {message.result}")
        except ClaudeSDKError as e:
            raise CompletionError(f"Request to Claude failed: {e}") from e
        return "".join(parts)

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
