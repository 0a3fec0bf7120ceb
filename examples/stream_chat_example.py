"""Streaming chat example: print tokens as they arrive, then the totals.

Demonstrates:
- Picking an adapter and wrapping it in a TextGenerator
- Iterating a ChatCompletionStream chunk by chunk
- Cancelling a stream after a token budget (--max-chunks)
- Answering streamed tool calls and replaying them into the history (--tools)
- Reading the aggregated completion and its usage afterwards

Usage:
    uv run --env-file=.env examples/stream_chat_example.py --provider openai --model gpt-4o-mini --tools
    uv run examples/stream_chat_example.py --provider local --url http://localhost:8000/v1 --model Qwen/Qwen3-8B --trace
"""

import argparse
import asyncio
import json
import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from tributary import (
    OpenAIAdapter,
    OpenAICompatibleAdapter,
    OpenRouter,
    TextGenerator,
    configure_logging,
)
from tributary.message import (
    Message,
    MessageRole,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)

PROVIDERS = {
    "openai": lambda url: OpenAIAdapter(),
    "openrouter": lambda url: OpenRouter(),
    "local": lambda url: OpenAICompatibleAdapter(base_url=url),
}

CURRENT_TIME_TOOL = {
    "type": "function",
    "function": {
        "name": "current_time",
        "description": "Current local time in an IANA timezone.",
        "parameters": {
            "type": "object",
            "properties": {
                "timezone": {"type": "string", "description": "e.g. Europe/Paris"},
            },
            "required": ["timezone"],
        },
    },
}


def make_adapter(provider: str, url: str | None):
    if provider == "local" and not url:
        raise SystemExit("--url is required for local provider")
    return PROVIDERS[provider](url)


def current_time(timezone: str) -> str:
    return datetime.now(ZoneInfo(timezone)).isoformat(timespec="seconds")


def run_tool(name: str, arguments: str) -> str:
    if name != "current_time":
        return f"Unknown tool: {name}"
    try:
        return current_time(**json.loads(arguments or "{}"))
    except Exception as e:
        return f"Tool failed: {e}"


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from tributary.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


async def stream_reply(generator, args, history):
    """Stream one assistant turn, printing it, and return the stream."""
    params = {"model": args.model, "messages": history}
    if args.tools:
        params["tools"] = [CURRENT_TIME_TOOL]

    stream = await generator.chat.stream(**params)
    received = 0
    async for chunk in stream:
        for choice in chunk.choices:
            print(choice.delta.content or "", end="", flush=True)
        received += 1
        if args.max_chunks and received >= args.max_chunks:
            stream.cancel()
    print()
    return stream, received


async def main(args):
    generator = TextGenerator(make_adapter(args.provider, args.url))
    history = [
        Message(role=MessageRole.SYSTEM, content="You are a concise assistant."),
    ]

    print("Type a message, or 'quit' to exit.")
    while True:
        user_input = input("\n> ").strip()
        if user_input.lower() in ("quit", "exit"):
            break
        history.append(Message(role=MessageRole.USER, content=user_input))

        while True:
            stream, received = await stream_reply(generator, args, history)
            completion = await stream.final_chat_completion()
            if not completion.choices:
                break
            reply = completion.choices[0].message
            if stream.cancelled or not reply.tool_calls:
                history.append(
                    Message(role=MessageRole.ASSISTANT, content=reply.content)
                )
                break

            history.append(ToolCallRequestMessage.from_completion(reply))
            for call in reply.tool_calls:
                result = run_tool(call.function.name, call.function.arguments)
                print(f"[{call.function.name}({call.function.arguments}) -> {result}]")
                history.append(
                    ToolCallResultMessage(content=result, tool_call_id=call.id)
                )

        usage = completion.usage
        print(
            f"[{received} chunks, {usage.prompt_tokens} prompt + "
            f"{usage.completion_tokens} completion tokens"
            f"{', cancelled' if stream.cancelled else ''}]"
        )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--provider", choices=PROVIDERS, default="openai")
    parser.add_argument("--url", default=None)
    parser.add_argument("--model", default="gpt-4o-mini")
    parser.add_argument("--max-chunks", type=int, default=0)
    parser.add_argument("--tools", action="store_true")
    parser.add_argument("--trace", action="store_true")
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.debug else logging.WARNING)
    if args.trace:
        setup_tracing("tributary-stream-chat")
    asyncio.run(main(args))
