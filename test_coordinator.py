"""End-to-end turn tests with a scripted model and a real tool registry."""

import asyncio
import json
import threading

import pytest

from backend import LocalBackend
from engine.checkpoints import CheckpointManager
from engine.compression import SUMMARY_HEADER
from engine.coordinator import REJECTED_MESSAGE, SKIPPED_MESSAGE, TurnCoordinator
from engine.events import Confirmation, ConfirmationOutcome
from engine.sensitive_commands import default_rules
from engine.undo_log import UndoLog
from tools.dispatch import ToolRegistry

_call_ids = iter(range(1, 10_000))


def tool_call(name, **args):
    return {"id": f"call-{next(_call_ids)}", "type": "function",
            "function": {"name": name, "arguments": json.dumps(args)}}


class ScriptedModel:
    """stream_completion stand-in: each model call consumes the next scripted reply."""

    def __init__(self, *replies, prompt_tokens=100):
        self.replies = list(replies)
        self.prompt_tokens = prompt_tokens
        self.requests = []

    async def __call__(self, model, messages, cancel=None, tools=None):
        self.requests.append({"messages": list(messages), "tools": [t["name"] for t in tools or []]})
        reply = self.replies.pop(0)
        if isinstance(reply, str):
            reply = {"text": reply}
        if reply.get("text"):
            yield {"type": "content", "content": reply["text"]}
        if reply.get("calls"):
            yield {"type": "tool_calls", "tool_calls": reply["calls"]}
        if reply.get("then_cancel"):
            # a cancelled stream ends quietly
            reply["then_cancel"].set()
            return
        yield {"type": "usage", "usage": {"prompt_tokens": self.prompt_tokens, "completion_tokens": 5}}


class ScriptedUser:
    """request_confirmation stand-in returning queued answers."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.prompts = []

    async def __call__(self, call, decision, siblings):
        self.prompts.append(([call.name] + [s.name for s in siblings], decision.is_sensitive))
        return self.answers.pop(0) if self.answers else Confirmation(ConfirmationOutcome.APPROVE)


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    return root


def make_coordinator(tmp_path, project, model, user=None, unattended=True, **kwargs):
    checkpoints = CheckpointManager(str(tmp_path / "checkpoints"))
    undo_log = UndoLog(str(tmp_path / "undo.json"))
    registry = ToolRegistry(LocalBackend(str(project)), checkpoints=checkpoints, undo_log=undo_log,
                            data_dir=str(tmp_path / "data"))
    return TurnCoordinator(
        stream_completion=model,
        registry=registry,
        request_confirmation=user or ScriptedUser(),
        checkpoints=checkpoints,
        undo_log=undo_log,
        session_id="s1",
        model="us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        unattended=unattended,
        rules=default_rules(),
        auto_approve_reads=True,
        max_iterations=10,
        sub_agent_max_iterations=5,
        **kwargs,
    )


def run_turn(coordinator, history, prompt, cancel=None):
    events = []

    async def on_event(event):
        events.append(event)

    result = asyncio.run(coordinator.run_turn(history, prompt, cancel=cancel, on_event=on_event))
    return result, events


def tool_messages(messages):
    return [m for m in messages if m["role"] == "tool"]


# ============================================================
# Basic flow
# ============================================================

def test_completed_turn_merges_results_and_commits(tmp_path, project):
    model = ScriptedModel(
        {"text": "Creating it.", "calls": [tool_call("filesystem-create", filePath="hello.txt", content="hi\n")]},
        "Done.",
    )
    coordinator = make_coordinator(tmp_path, project, model)
    result, events = run_turn(coordinator, [], "make hello.txt")

    assert result.status == "completed"
    assert result.final_text == "Done."
    assert (project / "hello.txt").read_text() == "hi\n"
    assert [m["role"] for m in result.messages] == ["system", "user", "assistant", "tool", "assistant"]
    assert json.loads(result.messages[3]["content"])["success"]
    assert result.usage.prompt_tokens == 200
    assert asyncio.run(coordinator.checkpoints.load("s1")) is None
    assert "tool_result" in [e.type for e in events]


def test_history_is_not_mutated(tmp_path, project):
    history = [{"role": "system", "content": "custom"}, {"role": "user", "content": "hi"},
               {"role": "assistant", "content": "hello"}]
    snapshot = [dict(m) for m in history]
    coordinator = make_coordinator(tmp_path, project, ScriptedModel("ok"))
    result, _ = run_turn(coordinator, history, "again")
    assert history == snapshot
    assert result.messages[:3] == history
    assert result.messages[0]["content"] == "custom"


def test_results_follow_call_order(tmp_path, project):
    (project / "a.txt").write_text("A")
    calls = [
        tool_call("terminal-execute", command="sleep 0.2; echo first"),
        tool_call("filesystem-read", filePath="a.txt"),
        tool_call("terminal-execute", command="echo second"),
    ]
    model = ScriptedModel({"calls": calls}, "ok")
    result, _ = run_turn(make_coordinator(tmp_path, project, model), [], "go")

    results = tool_messages(result.messages)
    assert [m["tool_call_id"] for m in results] == [c["id"] for c in calls]
    assert "first" in json.loads(results[0]["content"])["result"]
    assert "second" in json.loads(results[2]["content"])["result"]


def test_unknown_tool_becomes_an_error_result(tmp_path, project):
    model = ScriptedModel({"calls": [tool_call("filesystem-format", filePath="/")]}, "sorry")
    result, _ = run_turn(make_coordinator(tmp_path, project, model), [], "go")
    assert result.status == "completed"
    assert tool_messages(result.messages)[0]["content"].startswith("Error: Tool filesystem-format is not available")


def test_max_iterations_stops_the_loop(tmp_path, project):
    replies = [{"calls": [tool_call("todo-get")]} for _ in range(3)]
    coordinator = make_coordinator(tmp_path, project, ScriptedModel(*replies))
    coordinator.max_iterations = 3
    result, _ = run_turn(coordinator, [], "loop forever")
    assert result.status == "max_iterations"


def test_model_failure_ends_the_turn_with_an_error(tmp_path, project):
    async def broken(model, messages, cancel=None, tools=None):
        raise RuntimeError("service unavailable")
        yield  # pragma: no cover

    result, _ = run_turn(make_coordinator(tmp_path, project, broken), [], "go")
    assert result.status == "error"
    assert "service unavailable" in result.error


# ============================================================
# Permissions and confirmation
# ============================================================

def test_unattended_mode_asks_only_for_sensitive_commands(tmp_path, project):
    calls = [
        tool_call("terminal-execute", command="rm -rf build"),
        tool_call("filesystem-create", filePath="b.txt", content="b"),
    ]
    user = ScriptedUser(Confirmation(ConfirmationOutcome.APPROVE))
    model = ScriptedModel({"calls": calls}, "ok")
    result, _ = run_turn(make_coordinator(tmp_path, project, model, user), [], "clean")

    assert user.prompts == [(["terminal-execute"], True)]
    assert result.status == "completed"


def test_parallel_sub_agents_never_prompt_at_the_same_time(tmp_path, project):
    model = ScriptedModel(
        {"calls": [tool_call("subagent-agent_general", prompt="task A"),
                   tool_call("subagent-agent_general", prompt="task B")]},
        {"calls": [tool_call("terminal-execute", command="rm -rf build")]},
        {"calls": [tool_call("terminal-execute", command="rm -rf build")]},
        "left it",
        "left it",
        "ok",
    )
    open_prompts = []
    overlap = []

    async def slow_user(call, decision, siblings):
        open_prompts.append(call.id)
        overlap.append(len(open_prompts))
        await asyncio.sleep(0.05)
        open_prompts.remove(call.id)
        return Confirmation(ConfirmationOutcome.REJECT_WITH_REASON, reason="not now")

    result, _ = run_turn(make_coordinator(tmp_path, project, model, slow_user), [], "go")
    assert result.status == "completed"
    assert overlap == [1, 1]
    assert (project / "b.txt").exists()


def test_plain_reject_ends_the_turn(tmp_path, project):
    calls = [
        tool_call("terminal-execute", command="sudo rm -rf /var/tmp/x"),
        tool_call("filesystem-create", filePath="b.txt", content="b"),
    ]
    user = ScriptedUser(Confirmation(ConfirmationOutcome.REJECT))
    coordinator = make_coordinator(tmp_path, project, ScriptedModel({"calls": calls}), user)
    result, _ = run_turn(coordinator, [], "go")

    assert result.status == "rejected"
    contents = [m["content"] for m in tool_messages(result.messages)]
    assert contents == [REJECTED_MESSAGE, SKIPPED_MESSAGE]
    assert not (project / "b.txt").exists()
    # the turn was not committed, so it can still be rolled back
    assert asyncio.run(coordinator.checkpoints.load("s1")) is not None


def test_reject_with_reason_continues_the_turn(tmp_path, project):
    calls = [tool_call("terminal-execute", command="rm notes.txt")]
    user = ScriptedUser(Confirmation(ConfirmationOutcome.REJECT_WITH_REASON, reason="use git rm"))
    model = ScriptedModel({"calls": calls}, "Understood.")
    result, _ = run_turn(make_coordinator(tmp_path, project, model, user), [], "go")

    assert result.status == "completed"
    assert tool_messages(result.messages)[0]["content"] == f"{REJECTED_MESSAGE}: use git rm"
    # the model saw the reason on its next call
    assert model.requests[1]["messages"][-1]["content"].endswith("use git rm")


def test_attended_mode_groups_non_sensitive_calls(tmp_path, project):
    (project / "a.txt").write_text("A")
    calls = [
        tool_call("filesystem-read", filePath="a.txt"),
        tool_call("filesystem-create", filePath="b.txt", content="b"),
        tool_call("todo-add", content="check b"),
    ]
    user = ScriptedUser(Confirmation(ConfirmationOutcome.APPROVE_ALWAYS))
    model = ScriptedModel({"calls": calls}, {"calls": [tool_call("filesystem-create", filePath="c.txt", content="c")]},
                          "ok")
    result, _ = run_turn(make_coordinator(tmp_path, project, model, user, unattended=False), [], "go")

    # the read is pre-approved; one prompt covers the rest, and "always" covers the later create
    assert user.prompts == [(["filesystem-create", "todo-add"], False)]
    assert result.status == "completed"
    assert (project / "c.txt").exists()


def test_approve_always_does_not_cover_sensitive_commands(tmp_path, project):
    model = ScriptedModel(
        {"calls": [tool_call("terminal-execute", command="echo hi")]},
        {"calls": [tool_call("terminal-execute", command="rm -f x")]},
        "ok",
    )
    user = ScriptedUser(Confirmation(ConfirmationOutcome.APPROVE_ALWAYS), Confirmation(ConfirmationOutcome.APPROVE))
    run_turn(make_coordinator(tmp_path, project, model, user, unattended=False), [], "go")
    assert [names for names, _ in user.prompts] == [["terminal-execute"], ["terminal-execute"]]


# ============================================================
# Cancellation
# ============================================================

def test_cancel_aborts_the_turn_and_keeps_the_checkpoint(tmp_path, project):
    cancel = threading.Event()
    model = ScriptedModel({"calls": [tool_call("filesystem-create", filePath="x.txt", content="x")]}, "never")

    async def approve(call, decision, siblings):
        return Confirmation(ConfirmationOutcome.APPROVE)

    coordinator = make_coordinator(tmp_path, project, model, approve)

    async def on_result_cancel(event):
        if event.type == "tool_result":
            cancel.set()

    result = asyncio.run(coordinator.run_turn([], "go", cancel=cancel, on_event=on_result_cancel))
    assert result.status == "aborted"
    assert (project / "x.txt").exists()

    history = asyncio.run(coordinator.rollback(result.messages))
    assert not (project / "x.txt").exists()
    assert history == result.messages[:1]


# ============================================================
# Sub-agents
# ============================================================

def test_sub_agent_runs_in_isolation_and_returns_its_answer(tmp_path, project):
    model = ScriptedModel(
        {"calls": [tool_call("subagent-agent_explore", prompt="find the entry point")]},
        {"calls": [tool_call("filesystem-create", filePath="nope.txt", content="x")]},
        "Entry point is main.py",
        "The explorer says main.py.",
    )
    result, events = run_turn(make_coordinator(tmp_path, project, model), [{"role": "user", "content": "secret"}],
                              "where does it start?")

    assert result.status == "completed"
    sub_request = model.requests[1]
    assert len(sub_request["messages"]) == 1
    assert sub_request["messages"][0]["content"].startswith("find the entry point")
    assert "filesystem-create" not in sub_request["tools"]
    assert not any(name.startswith("subagent-") for name in sub_request["tools"])

    # the disallowed call was refused inside the sub-agent
    assert not (project / "nope.txt").exists()
    assert "not available to Explore Agent" in model.requests[2]["messages"][-1]["content"]

    sub_result = json.loads(tool_messages(result.messages)[0]["content"])
    assert sub_result == {"success": True, "result": "Entry point is main.py"}
    assert any(e.data and e.data.get("agent_id") == "agent_explore" for e in events)


def test_sub_agent_failure_is_an_error_result_for_the_parent(tmp_path, project):
    model = ScriptedModel({"calls": [tool_call("subagent-agent_plan", prompt="")]}, "ok")
    result, _ = run_turn(make_coordinator(tmp_path, project, model), [], "plan")
    assert result.status == "completed"
    assert tool_messages(result.messages)[0]["content"] == "Error: prompt is required"


def test_sensitive_commands_in_sub_agents_still_ask(tmp_path, project):
    model = ScriptedModel(
        {"calls": [tool_call("subagent-agent_general", prompt="clean up")]},
        {"calls": [tool_call("terminal-execute", command="rm -rf dist")]},
        "left it",
        "ok",
    )
    user = ScriptedUser(Confirmation(ConfirmationOutcome.REJECT_WITH_REASON, reason="keep dist"))
    result, _ = run_turn(make_coordinator(tmp_path, project, model, user), [], "go")
    assert user.prompts == [(["terminal-execute"], True)]
    assert result.status == "completed"


# ============================================================
# Compression and rollback
# ============================================================

def test_context_pressure_triggers_compression(tmp_path, project):
    model = ScriptedModel(
        {"calls": [tool_call("todo-get")]},
        "done",
        prompt_tokens=190_000,
    )
    result, events = run_turn(make_coordinator(tmp_path, project, model), [], "go")
    assert result.status == "completed"
    assert result.compressions == ["truncation"]
    assert "compression" in [e.type for e in events]


def earlier_work(rounds):
    messages = [{"role": "user", "content": "earlier work"}]
    for _ in range(rounds):
        call = tool_call("todo-get")
        messages.append({"role": "assistant", "content": "", "tool_calls": [call]})
        messages.append({"role": "tool", "tool_call_id": call["id"], "content": "no todos"})
    messages.append({"role": "assistant", "content": "earlier work done"})
    return messages


def test_cancelled_summary_leaves_the_transcript_alone(tmp_path, project):
    cancel = threading.Event()
    model = ScriptedModel(
        {"calls": [tool_call("todo-get")]},
        {"text": "half a sum", "then_cancel": cancel},
        prompt_tokens=190_000,
    )
    coordinator = make_coordinator(tmp_path, project, model)
    result, _ = run_turn(coordinator, earlier_work(4), "go", cancel=cancel)

    assert result.status == "aborted"
    assert result.compressions == []
    assert len(result.messages) == 14
    assert not any(str(m.get("content", "")).startswith(SUMMARY_HEADER) for m in result.messages)


def test_rollback_after_a_summary_cuts_the_whole_turn(tmp_path, project):
    model = ScriptedModel(
        {"calls": [tool_call("filesystem-create", filePath="out.txt", content="x")]},
        "summary of the earlier work",
        {"calls": [tool_call("todo-get")]},
        prompt_tokens=190_000,
    )
    coordinator = make_coordinator(tmp_path, project, model)
    coordinator.max_iterations = 2
    result, _ = run_turn(coordinator, earlier_work(4), "write out.txt")

    assert result.status == "max_iterations"
    assert result.compressions == ["ai_summary"]
    # system, summary, the preserved earlier rounds, then the turn
    assert result.messages[1]["content"].startswith(SUMMARY_HEADER)
    assert result.messages[7] == {"role": "user", "content": "write out.txt"}

    history = asyncio.run(coordinator.rollback(result.messages))
    assert not (project / "out.txt").exists()
    assert history == result.messages[:7]
    assert history[-1]["content"] == "earlier work done"
    assert not any("out.txt" in json.dumps(m) for m in history)


def test_rollback_to_an_earlier_message_undoes_notes(tmp_path, project):
    model = ScriptedModel(
        {"calls": [tool_call("notebook-add", filePath="a.py", note="first")]},
        "noted",
        {"calls": [tool_call("notebook-add", filePath="a.py", note="second")]},
        "noted again",
    )
    coordinator = make_coordinator(tmp_path, project, model)
    first, _ = run_turn(coordinator, [], "note one")
    second_start = len(first.messages)
    second, _ = run_turn(coordinator, first.messages, "note two")

    history = asyncio.run(coordinator.rollback_to(second.messages, second_start))
    assert history == first.messages
    notes = coordinator.registry.notebook_store.query()
    assert [n["note"] for n in notes] == ["first"]

    with pytest.raises(ValueError):
        asyncio.run(coordinator.rollback_to(history, len(history) + 1))
