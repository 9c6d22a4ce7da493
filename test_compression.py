"""Tests for two-phase context compression."""

import asyncio
import json
import threading

from engine.compression import (
    SUMMARY_HEADER,
    CompressionPhase,
    find_recent_rounds_start,
    main_compressor,
    truncate_tool_results,
)

WINDOW = 1000


def _round(n, result_size=1000):
    call_id = f"call-{n}"
    return [
        {
            "role": "assistant",
            "content": "",
            "tool_calls": [{"id": call_id, "type": "function",
                            "function": {"name": "filesystem-read", "arguments": json.dumps({"filePath": f"f{n}.py"})}}],
        },
        {"role": "tool", "tool_call_id": call_id, "content": "x" * result_size},
    ]


def _conversation(rounds=5, result_size=1000):
    messages = [{"role": "system", "content": "sys"}, {"role": "user", "content": "do the thing"}]
    for n in range(rounds):
        messages.extend(_round(n, result_size))
    return messages


def fake_summarizer(text="summary of earlier work", fail=False):
    requests = []

    async def stream_completion(model, messages, cancel=None):
        requests.append(messages)
        if fail:
            raise RuntimeError("model unavailable")
        if text:
            yield {"type": "content", "content": text}
        yield {"type": "usage", "usage": {"prompt_tokens": 10}}

    stream_completion.requests = requests
    return stream_completion


def test_no_pressure_returns_the_same_list():
    messages = _conversation()
    result = asyncio.run(main_compressor().compress(messages, 100, WINDOW, fake_summarizer(), "m"))
    assert not result.compressed
    assert result.phase == CompressionPhase.NONE
    assert result.messages is messages


def test_recent_rounds_boundary():
    messages = _conversation(rounds=5)
    # system, user, then rounds 0..4 at indexes 2,4,6,8,10; the last three start at 6
    assert find_recent_rounds_start(messages, 3) == 6
    assert find_recent_rounds_start(messages, 10) == 0


def test_truncation_only_touches_older_large_results():
    messages = _conversation(rounds=5)
    messages[3]["content"] = "short"
    truncated = truncate_tool_results(messages, keep_recent_rounds=3, min_length=500)
    assert truncated[3]["content"] == "short"
    assert truncated[5]["content"] == "[Tool result truncated: filesystem-read, original 1000 chars]"
    assert truncated[5]["tool_call_id"] == "call-1"
    for i in range(6, len(messages)):
        assert truncated[i] is messages[i]
    # input untouched
    assert messages[5]["content"] == "x" * 1000


def test_phase_one_is_enough_when_it_drops_below_threshold():
    messages = _conversation(rounds=5, result_size=5000)
    summarizer = fake_summarizer()
    result = asyncio.run(main_compressor().compress(messages, 900, WINDOW, summarizer, "m"))
    assert result.compressed
    assert result.phase == CompressionPhase.TRUNCATION
    assert result.after_tokens_estimate < 700
    assert summarizer.requests == []


def test_phase_two_summarizes_everything_before_recent_rounds():
    messages = _conversation(rounds=5, result_size=400)
    summarizer = fake_summarizer()
    result = asyncio.run(main_compressor().compress(messages, 950, WINDOW, summarizer, "m"))
    assert result.phase == CompressionPhase.AI_SUMMARY
    out = result.messages
    assert out[0] == {"role": "system", "content": "sys"}
    assert out[1]["role"] == "user"
    assert out[1]["content"].startswith(SUMMARY_HEADER)
    assert "summary of earlier work" in out[1]["content"]
    assert out[2:] == messages[6:]

    request = summarizer.requests[0]
    assert request[0]["role"] == "system"
    transcript = request[1]["content"]
    assert "[User]\ndo the thing" in transcript
    assert "-> Tool Call: filesystem-read" in transcript
    assert "sys" not in transcript.split("\n")


def test_summary_failure_falls_back_to_truncation():
    messages = _conversation(rounds=5, result_size=400)
    result = asyncio.run(main_compressor().compress(messages, 950, WINDOW, fake_summarizer(fail=True), "m"))
    assert result.compressed
    assert result.phase == CompressionPhase.TRUNCATION
    assert len(result.messages) == len(messages)
    assert any("summary failed" in note for note in result.notes)


def test_empty_summary_falls_back_to_truncation():
    messages = _conversation(rounds=5, result_size=400)
    result = asyncio.run(main_compressor().compress(messages, 950, WINDOW, fake_summarizer(text=""), "m"))
    assert result.phase == CompressionPhase.TRUNCATION
    assert "summary was empty" in result.notes


def test_cancelled_summary_falls_back_to_truncation():
    messages = _conversation(rounds=5, result_size=400)
    cancel = threading.Event()

    async def cut_short(model, request, cancel_event=None):
        yield {"type": "content", "content": "half a sum"}
        cancel_event.set()

    result = asyncio.run(main_compressor().compress(messages, 950, WINDOW, cut_short, "m", cancel))
    assert result.phase == CompressionPhase.TRUNCATION
    assert "summary cancelled" in result.notes
    assert not any(str(m["content"]).startswith(SUMMARY_HEADER) for m in result.messages)


def test_summary_stops_at_the_protected_index():
    messages = _conversation(rounds=5, result_size=400)
    summarizer = fake_summarizer()
    result = asyncio.run(main_compressor().compress(messages, 950, WINDOW, summarizer, "m", protect_from=4))
    assert result.phase == CompressionPhase.AI_SUMMARY
    assert result.messages[2:] == messages[4:]

    # only the system prompt lies before the protected index
    result = asyncio.run(main_compressor().compress(messages, 950, WINDOW, summarizer, "m", protect_from=1))
    assert result.phase == CompressionPhase.TRUNCATION
    assert len(summarizer.requests) == 1


def test_nothing_to_summarize_keeps_phase_one():
    messages = _conversation(rounds=2)
    summarizer = fake_summarizer()
    result = asyncio.run(main_compressor().compress(messages, 950, WINDOW, summarizer, "m"))
    assert result.phase == CompressionPhase.TRUNCATION
    assert summarizer.requests == []


def test_threshold_is_inclusive():
    compressor = main_compressor(threshold=70)
    assert compressor.should_compress(700, WINDOW)
    assert not compressor.should_compress(699, WINDOW)
