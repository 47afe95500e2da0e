"""Anthropic Messages backend: typed-schema tools with protocol-level error flags."""

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


ANTHROPIC_BASE_URL = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"


def _parse_tool_input(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"raw": raw}


class AnthropicBackend(ChatBackend):
    """Direct Anthropic Messages API provider."""

    family = BackendFamily.ANTHROPIC
    protocol = ToolProtocol.TYPED_SCHEMA

    def __init__(
        self,
        model: str = "claude-sonnet-4-6",
        api_key: str = "",
        base_url: str = ANTHROPIC_BASE_URL,
        temperature: float | None = None,
        max_tokens: int = 8192,
        timeout: float = 120.0,
        supports_images: bool = True,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.supports_images = supports_images
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _convert_messages(self, messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
        """Convert messages to (system prompt, Messages API turns).

        Consecutive blocks with the same role are merged into one turn, which
        also groups several tool results behind the assistant turn that
        requested them.
        """
        orphans = orphan_tool_call_ids(messages)
        system_parts: list[str] = []
        turns: list[dict[str, Any]] = []

        def push(role: str, blocks: list[dict[str, Any]]) -> None:
            if not blocks:
                return
            if turns and turns[-1]["role"] == role:
                turns[-1]["content"].extend(blocks)
            else:
                turns.append({"role": role, "content": list(blocks)})

        for msg in messages:
            if msg.role == "system":
                if msg.content:
                    system_parts.append(msg.content)
            elif msg.role == "user":
                blocks: list[dict[str, Any]] = []
                if self.supports_images:
                    for image in msg.images:
                        blocks.append({
                            "type": "image",
                            "source": {"type": "base64", "media_type": image.media_type, "data": image.b64()},
                        })
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                push("user", blocks)
            elif msg.role == "assistant":
                blocks = []
                if msg.content:
                    blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    blocks.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": _parse_tool_input(tc.arguments),
                    })
                push("assistant", blocks)
            elif msg.role == "tool":
                if msg.tool_call_id in orphans:
                    push("user", [{
                        "type": "text",
                        "text": f"[Tool result for {msg.tool_call_id}]\n{msg.content or ''}",
                    }])
                    continue
                block: dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content or "",
                }
                if msg.is_error:
                    block["is_error"] = True
                push("user", [block])

        return "\n\n".join(system_parts), turns

    @staticmethod
    def _convert_tools(tools: list[Any]) -> list[dict[str, Any]]:
        """Convert wrapped tools (or ready-made dicts) to Messages API tool specs."""
        result = []
        for tool in tools:
            if isinstance(tool, dict):
                result.append(tool)
            else:
                result.append(tool.definition())
        return result

    def _build_body(
        self,
        messages: list[Message],
        tools: list[Any] | None,
        stream: bool,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        system, turns = self._convert_messages(messages)
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens or self.max_tokens,
            "messages": turns,
            "stream": stream,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = self._convert_tools(tools)
        if self.temperature is not None:
            body["temperature"] = self.temperature
        return body

    async def stream(
        self,
        messages: list[Message],
        tools: list[Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response from the Messages API."""
        url = f"{self.base_url}/v1/messages"
        body = self._build_body(messages, tools, stream=True)

        try:
            log.debug("Calling messages API", model=self.model, msg_count=len(body["messages"]))
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Messages API error {response.status_code}: {error_text}",
                        status_code=response.status_code,
                    )

                usage: dict[str, int] = {}
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[len("data:"):].strip())
                    except json.JSONDecodeError:
                        continue

                    kind = event.get("type")
                    if kind == "content_block_start":
                        block = event.get("content_block") or {}
                        if block.get("type") == "tool_use":
                            yield StreamEvent(tool_call=ToolCallDelta(
                                index=int(event.get("index", 0)),
                                id=block.get("id"),
                                name=block.get("name"),
                            ))
                        elif block.get("type") == "text" and block.get("text"):
                            yield StreamEvent(text=block["text"])
                    elif kind == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield StreamEvent(text=delta["text"])
                        elif delta.get("type") == "input_json_delta":
                            yield StreamEvent(tool_call=ToolCallDelta(
                                index=int(event.get("index", 0)),
                                arguments=delta.get("partial_json") or "",
                            ))
                    elif kind == "message_start":
                        usage.update((event.get("message") or {}).get("usage") or {})
                    elif kind == "message_delta":
                        usage.update(event.get("usage") or {})
                    elif kind == "message_stop":
                        break
                    elif kind == "error":
                        error = event.get("error") or {}
                        raise LLMAPIError(f"Messages API stream error: {error.get('message', error)}")

                yield StreamEvent(done=True, usage=usage)

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Messages API streaming error: {e}")
        except Exception as e:
            raise LLMError(f"Messages API stream failed: {e}")

    async def complete(
        self,
        messages: list[Message],
        tools: list[Any] | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.base_url}/v1/messages"
        body = self._build_body(messages, tools, stream=False, max_tokens=max_tokens)

        try:
            response = await self.client.post(url, json=body, headers=self._headers())
            if not response.is_success:
                raise LLMAPIError(
                    f"Messages API error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
            texts: list[str] = []
            tool_calls: list[ToolCall] = []
            for block in data.get("content") or []:
                if block.get("type") == "text":
                    texts.append(block.get("text", ""))
                elif block.get("type") == "tool_use":
                    tool_calls.append(ToolCall(
                        id=block.get("id", ""),
                        name=block.get("name", ""),
                        arguments=json.dumps(block.get("input") or {}),
                    ))

            raw_usage = data.get("usage") or {}
            prompt = int(raw_usage.get("input_tokens", 0))
            completion = int(raw_usage.get("output_tokens", 0))
            return LLMResponse(
                content="".join(texts),
                tool_calls=tool_calls,
                model=data.get("model", self.model),
                usage={
                    "prompt_tokens": prompt,
                    "completion_tokens": completion,
                    "total_tokens": prompt + completion,
                },
            )

        except LLMError:
            raise
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Messages API HTTP error: {e}")
        except json.JSONDecodeError as e:
            raise LLMError(f"Messages API response decode error: {e}")
        except Exception as e:
            raise LLMError(f"Messages API call failed: {e}")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
