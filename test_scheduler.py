"""Tests for the tool call scheduler."""

import asyncio
import json
import threading
import time

from engine.events import ToolCall
from engine.scheduler import ABORTED_MESSAGE, ExecutionContext, execute_batch, execute_call


def _call(call_id, name, **args):
    return ToolCall(id=call_id, name=name, arguments=json.dumps(args))


class RecordingTools:
    """Fake invoke_tool that records start/end times and can fail or sleep per call."""

    def __init__(self, delays=None, failures=()):
        self.delays = delays or {}
        self.failures = set(failures)
        self.spans = {}

    async def invoke(self, name, arguments, cancel=None):
        args = json.loads(arguments)
        key = args.get("key")
        start = time.monotonic()
        await asyncio.sleep(self.delays.get(key, 0.01))
        self.spans[key] = (start, time.monotonic())
        if key in self.failures:
            raise RuntimeError(f"{key} exploded")
        return json.dumps({"success": True, "result": key})


def test_results_come_back_in_request_order():
    tools = RecordingTools(delays={"slow": 0.1, "fast": 0.0})
    calls = [
        _call("1", "filesystem-read", key="slow"),
        _call("2", "filesystem-read", key="fast"),
    ]
    results = asyncio.run(execute_batch(calls, ExecutionContext(invoke_tool=tools.invoke)))
    assert [r.tool_call_id for r in results] == ["1", "2"]
    assert tools.spans["fast"][1] < tools.spans["slow"][1]


def test_same_resource_calls_run_one_after_another():
    tools = RecordingTools(delays={"first": 0.05, "second": 0.0})
    calls = [
        _call("1", "terminal-execute", command="make", key="first"),
        _call("2", "terminal-execute", command="make test", key="second"),
    ]
    asyncio.run(execute_batch(calls, ExecutionContext(invoke_tool=tools.invoke)))
    assert tools.spans["second"][0] >= tools.spans["first"][1]


def test_independent_calls_overlap():
    tools = RecordingTools(delays={"a": 0.1, "b": 0.1})
    calls = [_call("1", "filesystem-read", key="a"), _call("2", "filesystem-read", key="b")]
    asyncio.run(execute_batch(calls, ExecutionContext(invoke_tool=tools.invoke)))
    assert tools.spans["b"][0] < tools.spans["a"][1]


def test_one_failure_does_not_affect_the_others():
    tools = RecordingTools(failures={"bad"})
    calls = [
        _call("1", "filesystem-read", key="good"),
        _call("2", "filesystem-read", key="bad"),
        _call("3", "todo-add", key="also-good"),
    ]
    results = asyncio.run(execute_batch(calls, ExecutionContext(invoke_tool=tools.invoke)))
    assert [r.is_error for r in results] == [False, True, False]
    assert results[1].content == "Error: bad exploded"


def test_cancel_set_before_a_call_aborts_it():
    cancel = threading.Event()
    cancel.set()
    tools = RecordingTools()
    result = asyncio.run(execute_call(_call("1", "filesystem-read", key="x"),
                                      ExecutionContext(invoke_tool=tools.invoke, cancel=cancel)))
    assert result.is_error
    assert result.content == ABORTED_MESSAGE
    assert tools.spans == {}


def test_cancel_during_group_aborts_remaining_calls():
    cancel = threading.Event()

    async def invoke(name, arguments, c=None):
        cancel.set()
        return '{"success": true}'

    calls = [
        _call("1", "terminal-execute", command="a"),
        _call("2", "terminal-execute", command="b"),
    ]
    results = asyncio.run(execute_batch(calls, ExecutionContext(invoke_tool=invoke, cancel=cancel)))
    assert not results[0].is_error
    assert results[1].content == ABORTED_MESSAGE


def test_sub_agent_calls_use_the_sub_agent_runner():
    seen = []

    async def invoke(name, arguments, cancel=None):
        seen.append(("tool", name))
        return "{}"

    async def run_sub_agent(call, cancel=None):
        seen.append(("agent", call.name))
        return json.dumps({"success": True, "result": "done"})

    calls = [_call("1", "subagent-agent_explore", prompt="look"), _call("2", "filesystem-read", filePath="a")]
    results = asyncio.run(execute_batch(calls, ExecutionContext(invoke_tool=invoke, run_sub_agent=run_sub_agent)))
    assert ("agent", "subagent-agent_explore") in seen
    assert ("tool", "filesystem-read") in seen
    assert json.loads(results[0].content)["result"] == "done"


def test_sub_agent_call_without_runner_is_an_error():
    async def invoke(name, arguments, cancel=None):
        return "{}"

    results = asyncio.run(execute_batch([_call("1", "subagent-agent_plan", prompt="x")],
                                        ExecutionContext(invoke_tool=invoke)))
    assert results[0].is_error


def test_on_result_sees_every_call_and_its_failures_are_ignored():
    seen = []

    async def invoke(name, arguments, cancel=None):
        return "{}"

    async def on_result(call, result):
        seen.append(call.id)
        raise ValueError("listener broke")

    calls = [_call("1", "filesystem-read"), _call("2", "filesystem-read")]
    results = asyncio.run(execute_batch(calls, ExecutionContext(invoke_tool=invoke, on_result=on_result)))
    assert sorted(seen) == ["1", "2"]
    assert len(results) == 2


def test_empty_batch():
    async def invoke(name, arguments, cancel=None):
        raise AssertionError("not called")

    assert asyncio.run(execute_batch([], ExecutionContext(invoke_tool=invoke))) == []
