import asyncio

import pytest

from turnkeeper.agent import (
    CEILING_FALLBACK_REPLY,
    CEILING_SUMMARY_REQUEST,
    TURN_ERROR_REPLY,
    Agent,
    TurnState,
    strip_thinking,
)
from turnkeeper.compaction import CHECKPOINT_HEADER, COMPACTION_PROMPT
from turnkeeper.config import Config
from turnkeeper.exceptions import LLMAPIError
from turnkeeper.llm import (
    BackendFamily,
    ChatBackend,
    ImageAttachment,
    LLMResponse,
    StreamEvent,
    ToolCallDelta,
    ToolProtocol,
)
from turnkeeper.prompt import SystemPromptCache
from turnkeeper.tools.registry import ToolDescriptor, ToolParameter, ToolRegistry, WrappedTool


def text_step(*chunks: str) -> list[StreamEvent]:
    return [StreamEvent(text=chunk) for chunk in chunks] + [StreamEvent(done=True)]


def tool_step(name: str, arguments: str, call_id: str = "c1", index: int = 0) -> list[StreamEvent]:
    return [
        StreamEvent(tool_call=ToolCallDelta(index=index, id=call_id, name=name, arguments=arguments)),
        StreamEvent(done=True),
    ]


class ScriptedBackend(ChatBackend):
    """Replays a fixed list of streamed turns; each entry is events or an exception."""

    family = BackendFamily.OPENAI
    protocol = ToolProtocol.JSON_SCHEMA

    def __init__(self, script, summary: str = "Here is where things stand.", supports_images: bool = True):
        self.model = "gpt-4o"
        self.supports_images = supports_images
        self.script = list(script)
        self.summary = summary
        self.stream_calls: list[dict] = []
        self.complete_calls: list[list] = []

    async def stream(self, messages, tools=None):
        self.stream_calls.append({"messages": messages, "tools": tools})
        step = self.script.pop(0) if self.script else text_step("unscripted")
        if isinstance(step, Exception):
            raise step
        for event in step:
            yield event

    async def complete(self, messages, tools=None, max_tokens=None):
        self.complete_calls.append(messages)
        if isinstance(self.summary, Exception):
            raise self.summary
        return LLMResponse(content=self.summary)


class TypedScriptedBackend(ScriptedBackend):
    family = BackendFamily.ANTHROPIC
    protocol = ToolProtocol.TYPED_SCHEMA


class EchoTool:
    def __init__(self):
        self.calls: list[dict] = []

    async def __call__(self, args: dict) -> str:
        self.calls.append(args)
        return args["text"]


def _registry(echo: EchoTool) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(ToolDescriptor(
        name="echo",
        description="Echo text back",
        executor=echo,
        parameters=[ToolParameter(name="text")],
    ))
    return registry


def _agent(backend: ChatBackend, registry: ToolRegistry, **kwargs) -> Agent:
    kwargs.setdefault("prompt_cache", SystemPromptCache(lambda: "You are a test agent."))
    kwargs.setdefault("config", Config())
    return Agent(backend=backend, registry=registry, **kwargs)


@pytest.mark.asyncio
async def test_echo_round_trip():
    echo = EchoTool()
    backend = ScriptedBackend([tool_step("echo", '{"text": "hi"}'), text_step("done")])
    agent = _agent(backend, _registry(echo))

    reply = await agent.run_turn("conv-1", "say hi")

    assert reply == "done"
    assert len(backend.stream_calls) == 2
    assert echo.calls == [{"text": "hi"}]

    second_request = backend.stream_calls[1]["messages"]
    assert [m.role for m in second_request] == ["system", "user", "assistant", "tool"]
    assert second_request[2].tool_calls[0].name == "echo"
    assert second_request[3].content == "hi"
    assert second_request[3].tool_call_id == "c1"
    assert second_request[3].is_error is False

    stats = agent.last_stats["conv-1"]
    assert stats.state is TurnState.DONE
    assert stats.backend_calls == 2
    assert stats.tool_calls == 1


@pytest.mark.asyncio
async def test_plain_answer_makes_one_backend_call():
    echo = EchoTool()
    backend = ScriptedBackend([text_step("Just ", "an answer")])
    agent = _agent(backend, _registry(echo))

    reply = await agent.run_turn("conv-1", "hello")

    assert reply == "Just an answer"
    assert len(backend.stream_calls) == 1
    assert backend.complete_calls == []
    assert echo.calls == []


@pytest.mark.asyncio
async def test_tools_are_rendered_for_json_schema_protocol():
    backend = ScriptedBackend([text_step("ok")])
    agent = _agent(backend, _registry(EchoTool()))

    await agent.run_turn("conv-1", "hello")

    (tool,) = backend.stream_calls[0]["tools"]
    assert tool["type"] == "function"
    assert tool["function"]["name"] == "echo"


@pytest.mark.asyncio
async def test_ceiling_requests_a_summary():
    backend = ScriptedBackend(
        [tool_step("echo", f'{{"text": "{i}"}}', call_id=f"c{i}") for i in range(3)],
        summary="Echoed three times; nothing left to do.",
    )
    agent = _agent(backend, _registry(EchoTool()), max_tool_turns=3)

    reply = await agent.run_turn("conv-1", "keep going")

    assert reply == "Echoed three times; nothing left to do."
    assert len(backend.stream_calls) + len(backend.complete_calls) == 4
    (summary_request,) = backend.complete_calls
    assert summary_request[-1].role == "user"
    assert summary_request[-1].content == CEILING_SUMMARY_REQUEST

    stats = agent.last_stats["conv-1"]
    assert stats.state is TurnState.CEILING_REACHED
    assert stats.backend_calls == 4


@pytest.mark.asyncio
async def test_ceiling_falls_back_when_summary_fails():
    backend = ScriptedBackend(
        [tool_step("echo", '{"text": "x"}', call_id=f"c{i}") for i in range(2)],
        summary=RuntimeError("upstream down"),
    )
    agent = _agent(backend, _registry(EchoTool()), max_tool_turns=2)

    reply = await agent.run_turn("conv-1", "keep going")

    assert reply == CEILING_FALLBACK_REPLY


@pytest.mark.asyncio
async def test_transport_failure_returns_fixed_reply():
    backend = ScriptedBackend([LLMAPIError("connection reset by peer", status_code=502)])
    agent = _agent(backend, _registry(EchoTool()))

    reply = await agent.run_turn("conv-1", "hello")

    assert reply == TURN_ERROR_REPLY
    assert "connection reset" not in reply
    assert agent.last_stats["conv-1"].state is TurnState.FAILED


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_are_fed_back():
    backend = ScriptedBackend([
        tool_step("missing", "{}"),
        tool_step("echo", "{not json", call_id="c2"),
        text_step("gave up"),
    ])
    agent = _agent(backend, _registry(EchoTool()))

    reply = await agent.run_turn("conv-1", "hello")

    assert reply == "gave up"
    unknown = backend.stream_calls[1]["messages"][-1]
    bad = backend.stream_calls[2]["messages"][-1]
    assert unknown.content == "Unknown tool: missing"
    assert unknown.is_error is True
    assert bad.content.startswith("Failed to parse tool arguments:")
    assert bad.is_error is True


@pytest.mark.asyncio
async def test_repeated_calls_are_replaced_by_loop_message():
    echo = EchoTool()
    backend = ScriptedBackend([
        tool_step("echo", '{"text": "again"}', call_id="c1"),
        tool_step("echo", '{"text": "again"}', call_id="c2"),
        tool_step("echo", '{"text": "again"}', call_id="c3"),
        text_step("ok, stopping"),
    ])
    agent = _agent(backend, _registry(echo))

    reply = await agent.run_turn("conv-1", "loop")

    assert reply == "ok, stopping"
    assert len(echo.calls) == 2
    assert backend.stream_calls[3]["messages"][-1].content.startswith("Loop detected: you've called echo")


@pytest.mark.asyncio
async def test_loop_state_is_reset_between_turn_sequences():
    echo = EchoTool()
    backend = ScriptedBackend([
        tool_step("echo", '{"text": "x"}', call_id="c1"),
        tool_step("echo", '{"text": "x"}', call_id="c2"),
        text_step("first"),
        tool_step("echo", '{"text": "x"}', call_id="c3"),
        text_step("second"),
    ])
    agent = _agent(backend, _registry(echo))

    await agent.run_turn("conv-1", "one")
    await agent.run_turn("conv-1", "two")

    assert len(echo.calls) == 3


@pytest.mark.asyncio
async def test_fragmented_tool_call_is_reassembled():
    echo = EchoTool()
    backend = ScriptedBackend([
        [
            StreamEvent(text="Let me echo that."),
            StreamEvent(tool_call=ToolCallDelta(index=0, id="call_a", name="echo")),
            StreamEvent(tool_call=ToolCallDelta(index=0, arguments='{"te')),
            StreamEvent(tool_call=ToolCallDelta(index=1, id="call_b", name="echo", arguments='{"text": "b"}')),
            StreamEvent(tool_call=ToolCallDelta(index=0, arguments='xt": "a"}')),
            StreamEvent(done=True),
        ],
        text_step("both done"),
    ])
    agent = _agent(backend, _registry(echo))

    reply = await agent.run_turn("conv-1", "echo a and b")

    assert reply == "both done"
    assert echo.calls == [{"text": "a"}, {"text": "b"}]
    request = backend.stream_calls[1]["messages"]
    assert request[2].content == "Let me echo that."
    assert [tc.id for tc in request[2].tool_calls] == ["call_a", "call_b"]
    assert [m.tool_call_id for m in request[3:]] == ["call_a", "call_b"]


@pytest.mark.asyncio
async def test_typed_schema_protocol_uses_wrapped_tools_and_error_flag():
    async def failing(args: dict) -> str:
        return f"Error: could not echo {args['text']}"

    registry = ToolRegistry()
    registry.register(ToolDescriptor(
        name="echo",
        description="Echo text back",
        executor=failing,
        parameters=[ToolParameter(name="text")],
    ))
    backend = TypedScriptedBackend([tool_step("echo", '{"text": "hi"}'), text_step("sorry")])
    agent = _agent(backend, registry)

    reply = await agent.run_turn("conv-1", "say hi")

    assert reply == "sorry"
    (tool,) = backend.stream_calls[0]["tools"]
    assert isinstance(tool, WrappedTool)
    result = backend.stream_calls[1]["messages"][-1]
    assert result.role == "tool"
    assert result.content == "Error: could not echo hi"
    assert result.is_error is True


@pytest.mark.asyncio
async def test_progress_callback_receives_sanitized_text():
    updates: list[str] = []
    backend = ScriptedBackend([text_step("<think>plan", "</think>Hel", "lo")])
    agent = _agent(backend, _registry(EchoTool()))

    reply = await agent.run_turn("conv-1", "hi", on_chunk=updates.append)

    assert reply == "Hello"
    assert updates == ["Hel", "Hello"]


@pytest.mark.asyncio
async def test_failing_progress_callback_does_not_break_the_turn():
    def broken(text: str) -> None:
        raise RuntimeError("display gone")

    backend = ScriptedBackend([text_step("fine")])
    agent = _agent(backend, _registry(EchoTool()))

    assert await agent.run_turn("conv-1", "hi", on_chunk=broken) == "fine"


@pytest.mark.asyncio
async def test_async_progress_callback_is_scheduled():
    updates: list[str] = []

    async def record(text: str) -> None:
        updates.append(text)

    backend = ScriptedBackend([text_step("a", "b")])
    agent = _agent(backend, _registry(EchoTool()))

    await agent.run_turn("conv-1", "hi", on_chunk=record)
    await asyncio.sleep(0)

    assert updates == ["a", "ab"]


@pytest.mark.asyncio
async def test_history_grows_and_is_compacted_inside_the_loop():
    async def big(args: dict) -> str:
        return "x" * 400

    registry = ToolRegistry()
    registry.register(ToolDescriptor(name="big", description="Large output", executor=big))
    backend = ScriptedBackend(
        [tool_step("big", f'{{"n": {i}}}', call_id=f"c{i}") for i in range(3)] + [text_step("finished")],
        summary="## Goal\nRead big outputs",
    )
    config = Config()
    config.context.context_windows = {"gpt-4o": 200}
    agent = _agent(backend, registry, config=config)

    reply = await agent.run_turn("conv-1", "go")

    assert reply == "finished"
    (summary_request,) = backend.complete_calls
    assert summary_request[0].content == COMPACTION_PROMPT
    final_request = backend.stream_calls[3]["messages"]
    assert len(final_request) == 7
    assert final_request[2].content.startswith(CHECKPOINT_HEADER)
    assert agent.last_stats["conv-1"].compactions == 1


@pytest.mark.asyncio
async def test_previous_exchanges_are_prepended():
    backend = ScriptedBackend([text_step("hi there"), text_step("still here")])
    agent = _agent(backend, _registry(EchoTool()))

    await agent.run_turn("conv-1", "hello")
    await agent.run_turn("conv-1", "are you there?")
    await agent.run_turn("conv-2", "fresh")

    second = backend.stream_calls[1]["messages"][1].content
    assert second.startswith("# Recent Conversation")
    assert "User: hello" in second
    assert "Assistant: hi there" in second
    assert second.endswith("User's latest message follows:\n\nare you there?")
    assert backend.stream_calls[2]["messages"][1].content == "fresh"


@pytest.mark.asyncio
async def test_image_is_attached_only_when_supported():
    image = ImageAttachment(media_type="image/png", data=b"\x89PNG")
    with_images = ScriptedBackend([text_step("a cat")])
    without_images = ScriptedBackend([text_step("no idea")], supports_images=False)

    await _agent(with_images, _registry(EchoTool())).run_turn("c", "what is this?", image=image)
    await _agent(without_images, _registry(EchoTool())).run_turn("c", "what is this?", image=image)

    assert with_images.stream_calls[0]["messages"][1].images == [image]
    assert without_images.stream_calls[0]["messages"][1].images == []


@pytest.mark.asyncio
async def test_invalidate_cache_reloads_prompt_and_clears_loop_state():
    loads: list[int] = []

    def loader() -> str:
        loads.append(1)
        return f"prompt v{len(loads)}"

    backend = ScriptedBackend([text_step("a"), text_step("b"), text_step("c")])
    agent = _agent(backend, _registry(EchoTool()), prompt_cache=SystemPromptCache(loader))
    agent.loop_detector.check("echo", "{}", key="other")

    await agent.run_turn("conv-1", "one")
    await agent.run_turn("conv-1", "two")
    agent.invalidate_cache()
    await agent.run_turn("conv-1", "three")

    assert len(loads) == 2
    assert backend.stream_calls[2]["messages"][0].content == "prompt v2"
    assert agent.loop_detector.recent("other") == []


def test_default_prompt_names_the_backend():
    backend = ScriptedBackend([])
    agent = Agent(backend=backend, registry=ToolRegistry(), config=Config())

    prompt = asyncio.run(agent.prompt_cache.get())

    assert "# System Info" in prompt
    assert "`gpt-4o`" in prompt
    assert "OpenAI-compatible Chat Completions" in prompt


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("<think>private</think>Answer", "Answer"),
        ("Before<think>a</think> middle <think>b</think>after", "Before middle after"),
        ("Partial <think>still reasoning", "Partial"),
        ("  plain  ", "plain"),
    ],
)
def test_strip_thinking(raw: str, expected: str):
    assert strip_thinking(raw) == expected


@pytest.mark.asyncio
async def test_typed_schema_turn_with_underscore_parameter_name():
    async def lookup(args: dict) -> str:
        return f"record {args['_id']}"

    registry = ToolRegistry()
    registry.register(ToolDescriptor(
        name="lookup",
        description="Look up a record",
        executor=lookup,
        parameters=[ToolParameter(name="_id")],
    ))
    backend = TypedScriptedBackend([tool_step("lookup", '{"_id": "r-7"}'), text_step("hello")])
    agent = _agent(backend, registry)

    reply = await agent.run_turn("conv-1", "find r-7")

    assert reply == "hello"
    assert backend.stream_calls[1]["messages"][-1].content == "record r-7"


@pytest.mark.asyncio
async def test_loop_threshold_comes_from_config():
    echo = EchoTool()
    config = Config()
    config.agent.loop_threshold = 4
    config.agent.fingerprint_chars = 20
    backend = ScriptedBackend(
        [tool_step("echo", '{"text": "same"}', call_id=f"c{i}") for i in range(4)] + [text_step("stopped")],
    )
    agent = _agent(backend, _registry(echo), config=config)

    reply = await agent.run_turn("conv-1", "repeat")

    assert agent.loop_detector.threshold == 4
    assert agent.loop_detector.fingerprint_chars == 20
    assert reply == "stopped"
    assert len(echo.calls) == 3
    assert backend.stream_calls[4]["messages"][-1].content.startswith(
        "Loop detected: you've called echo with the same arguments 4 times in a row."
    )


@pytest.mark.asyncio
async def test_conversation_state_is_released_after_each_turn(monkeypatch):
    import turnkeeper.agent as agent_module

    monkeypatch.setattr(agent_module, "MAX_TRACKED_CONVERSATIONS", 2)
    backend = ScriptedBackend([tool_step("echo", '{"text": "x"}'), text_step("a"), text_step("b"), text_step("c")])
    agent = _agent(backend, _registry(EchoTool()))

    await agent.run_turn("conv-1", "one")
    assert agent.loop_detector.recent("conv-1") == []

    await agent.run_turn("conv-2", "two")
    await agent.run_turn("conv-3", "three")
    assert list(agent.last_stats) == ["conv-2", "conv-3"]


@pytest.mark.asyncio
async def test_failed_turn_is_not_recorded_in_history():
    backend = ScriptedBackend([LLMAPIError("timeout"), text_step("back again")])
    agent = _agent(backend, _registry(EchoTool()))

    assert await agent.run_turn("conv-1", "first try") == TURN_ERROR_REPLY
    await agent.run_turn("conv-1", "second try")

    assert agent.history.get("conv-1")[0].content == "second try"
    assert backend.stream_calls[1]["messages"][1].content == "second try"
