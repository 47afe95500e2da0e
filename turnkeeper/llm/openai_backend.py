"""OpenAI-compatible backend: JSON-Schema function calling over HTTP."""

import json
from typing import Any, AsyncIterator

import httpx

from turnkeeper.exceptions import LLMAPIError, LLMError
from turnkeeper.llm import (
    BackendFamily,
    ChatBackend,
    LLMResponse,
    Message,
    StreamEvent,
    ToolCall,
    ToolCallDelta,
    ToolProtocol,
    orphan_tool_call_ids,
)
from turnkeeper.logging import get_logger

log = get_logger(__name__)


OPENAI_BASE_URL = "https://api.openai.com/v1"


class OpenAIBackend(ChatBackend):
    """Chat Completions API provider (OpenAI, MiniMax, Ollama /v1, ...)."""

    family = BackendFamily.OPENAI
    protocol = ToolProtocol.JSON_SCHEMA

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: str | None = None,
        base_url: str = OPENAI_BASE_URL,
        temperature: float | None = None,
        timeout: float = 120.0,
        supports_images: bool = True,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the backend.

        Args:
            model: Model identifier sent to the API
            api_key: Bearer token; optional for local servers
            base_url: API base URL up to and including the version segment
            temperature: Optional sampling temperature
            timeout: HTTP timeout in seconds
            supports_images: Whether user images are forwarded
            client: Optional preconfigured httpx client
        """
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.supports_images = supports_images
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to Chat Completions format."""
        orphans = orphan_tool_call_ids(messages)
        result: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                result.append({"role": "system", "content": msg.content or ""})
            elif msg.role == "user":
                if msg.images and self.supports_images:
                    parts: list[dict[str, Any]] = [{"type": "text", "text": msg.content or ""}]
                    for image in msg.images:
                        parts.append({"type": "image_url", "image_url": {"url": image.data_url()}})
                    result.append({"role": "user", "content": parts})
                else:
                    result.append({"role": "user", "content": msg.content or ""})
            elif msg.role == "assistant":
                entry: dict[str, Any] = {"role": "assistant", "content": msg.content}
                if msg.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.name, "arguments": tc.arguments},
                        }
                        for tc in msg.tool_calls
                    ]
                elif entry["content"] is None:
                    entry["content"] = ""
                result.append(entry)
            elif msg.role == "tool":
                if msg.tool_call_id in orphans:
                    result.append({
                        "role": "user",
                        "content": f"[Tool result for {msg.tool_call_id}]\n{msg.content or ''}",
                    })
                else:
                    result.append({
                        "role": "tool",
                        "tool_call_id": msg.tool_call_id,
                        "content": msg.content or "",
                    })

        return result

    def _build_body(
        self,
        messages: list[Message],
        tools: list[Any] | None,
        stream: bool,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(messages),
            "stream": stream,
        }
        if tools:
            body["tools"] = list(tools)
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if max_tokens:
            body["max_tokens"] = max_tokens
        return body

    async def stream(
        self,
        messages: list[Message],
        tools: list[Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion as server-sent events."""
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(messages, tools, stream=True)

        try:
            log.debug("Calling chat completions", model=self.model, url=url, msg_count=len(body["messages"]))
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Chat completions API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                usage: dict[str, int] = {}
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    payload = line[len("data:"):].strip()
                    if payload == "[DONE]":
                        break
                    try:
                        chunk = json.loads(payload)
                    except json.JSONDecodeError:
                        log.debug("Skipping undecodable stream chunk", chunk=payload[:200])
                        continue

                    if chunk.get("error"):
                        raise LLMAPIError(f"Chat completions stream error: {chunk['error']}")
                    if chunk.get("usage"):
                        usage = dict(chunk["usage"])

                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if delta.get("content"):
                            yield StreamEvent(text=delta["content"])
                        for tc in delta.get("tool_calls") or []:
                            function = tc.get("function") or {}
                            yield StreamEvent(tool_call=ToolCallDelta(
                                index=int(tc.get("index", 0)),
                                id=tc.get("id"),
                                name=function.get("name"),
                                arguments=function.get("arguments") or "",
                            ))

                yield StreamEvent(done=True, usage=usage)

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Chat completions streaming error: {e}")
        except Exception as e:
            raise LLMError(f"Chat completions stream failed: {e}")

    async def complete(
        self,
        messages: list[Message],
        tools: list[Any] | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/chat/completions"
        body = self._build_body(messages, tools, stream=False, max_tokens=max_tokens)

        try:
            response = await self.client.post(url, json=body, headers=self._headers())
            if not response.is_success:
                raise LLMAPIError(
                    f"Chat completions API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
            choices = data.get("choices") or []
            message = choices[0].get("message", {}) if choices else {}

            tool_calls = [
                ToolCall(
                    id=tc.get("id", ""),
                    name=tc.get("function", {}).get("name", ""),
                    arguments=tc.get("function", {}).get("arguments") or "{}",
                )
                for tc in message.get("tool_calls") or []
            ]

            return LLMResponse(
                content=message.get("content") or "",
                tool_calls=tool_calls,
                model=data.get("model", self.model),
                usage=dict(data.get("usage") or {}),
            )

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Chat completions HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Chat completions response decode error: {e}")
        except Exception as e:
            raise LLMError(f"Chat completions call failed: {e}")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
