"""Tests for sensitive-command rules and the permission gate."""

import json

import pytest

from engine.events import PermissionDecision, ToolCall
from engine.permissions import ApprovalMemory, check_permission, filter_by_sensitivity
from engine.sensitive_commands import (
    PRESET_SENSITIVE_COMMANDS,
    SensitiveCommand,
    SensitiveCommandStore,
    command_segments,
    default_rules,
    match_sensitive_command,
    pattern_to_regex,
)


def _terminal(call_id, command):
    return ToolCall(id=call_id, name="terminal-execute", arguments=json.dumps({"command": command}))


class ExplodingRules(list):
    def __iter__(self):
        raise RuntimeError("rules unavailable")


# ============================================================
# Pattern matching
# ============================================================

def test_pattern_is_anchored_and_literal():
    regex = pattern_to_regex("git push*--force*")
    assert regex.search("git push origin main --force")
    assert not regex.search("echo git push --force")
    # regex metacharacters in a pattern are literal
    assert not pattern_to_regex("a.b*").search("axb")


def test_match_collapses_whitespace_and_ignores_case():
    rules = default_rules()
    assert match_sensitive_command("  RM   -rf   build ", rules).id == "rm"
    assert match_sensitive_command("ls -la", rules) is None


def test_chained_commands_are_checked_one_by_one():
    rules = default_rules()
    assert match_sensitive_command("true && rm -rf ~", rules).id == "rm"
    assert match_sensitive_command("cd build; sudo make install", rules).id == "sudo"
    assert match_sensitive_command("make || \n  chmod 777 out", rules).id == "chmod"
    assert match_sensitive_command("cat log | pkill -f server", rules).id == "pkill"
    assert match_sensitive_command("echo rm -rf; ls | wc -l", rules) is None
    assert command_segments("a  &&  b ;c") == ["a && b ;c", "a", "b", "c"]


def test_disabled_rules_do_not_match():
    rules = default_rules()
    assert match_sensitive_command("git push origin main", rules) is None
    assert match_sensitive_command("git push origin main --force", rules).id == "git-force-push"


# ============================================================
# Permission gate
# ============================================================

def test_attended_mode_always_asks():
    decision = check_permission("filesystem-read", {"filePath": "a"}, unattended=False, rules=[])
    assert decision.needs_confirmation
    assert not decision.is_sensitive


def test_unattended_sensitive_command_needs_confirmation():
    decision = check_permission("terminal-execute", {"command": "rm -rf /"}, unattended=True,
                                rules=default_rules())
    assert decision.needs_confirmation
    assert decision.is_sensitive
    assert decision.matched_rule.id == "rm"


def test_unattended_plain_command_runs():
    decision = check_permission("terminal-execute", {"command": "ls"}, unattended=True, rules=default_rules())
    assert not decision.needs_confirmation


def test_unattended_non_terminal_tool_runs():
    decision = check_permission("filesystem-delete", {"filePath": "a"}, unattended=True, rules=default_rules())
    assert not decision.needs_confirmation


def test_rule_failure_fails_closed():
    decision = check_permission("terminal-execute", {"command": "ls"}, unattended=True, rules=ExplodingRules())
    assert decision.needs_confirmation
    assert decision.is_sensitive


def test_filter_by_sensitivity_splits_batch():
    calls = [
        _terminal("1", "ls"),
        _terminal("2", "sudo reboot"),
        ToolCall(id="3", name="filesystem-read", arguments='{"filePath": "a"}'),
    ]
    sensitive, rest = filter_by_sensitivity(calls, unattended=True, rules=default_rules())
    assert [c.id for c, _ in sensitive] == ["2"]
    assert [c.id for c in rest] == ["1", "3"]


def test_filter_by_sensitivity_attended_marks_nothing_sensitive():
    sensitive, rest = filter_by_sensitivity([_terminal("1", "rm -rf x")], unattended=False, rules=default_rules())
    assert sensitive == []
    assert len(rest) == 1


# ============================================================
# Approval memory
# ============================================================

def test_read_only_tools_are_preapproved():
    memory = ApprovalMemory({"filesystem-read"}, default_rules())
    call = ToolCall(id="1", name="filesystem-read", arguments='{"filePath": "a"}')
    assert memory.covers(call, PermissionDecision(needs_confirmation=True))


def test_approve_always_never_covers_sensitive_commands():
    memory = ApprovalMemory((), default_rules())
    memory.remember("terminal-execute")
    assert memory.approved_tools == {"terminal-execute"}
    assert memory.covers(_terminal("1", "pytest -q"), PermissionDecision(needs_confirmation=True))
    assert not memory.covers(_terminal("2", "rm -rf dist"), PermissionDecision(needs_confirmation=True))
    assert not memory.covers(_terminal("3", "pytest"),
                             PermissionDecision(needs_confirmation=True, is_sensitive=True))


# ============================================================
# Rule store
# ============================================================

def test_store_seeds_presets(tmp_path):
    store = SensitiveCommandStore(str(tmp_path / "rules.json"))
    rules = store.load()
    assert [r.id for r in rules] == [p.id for p in PRESET_SENSITIVE_COMMANDS]
    assert (tmp_path / "rules.json").exists()


def test_store_add_toggle_remove(tmp_path):
    store = SensitiveCommandStore(str(tmp_path / "rules.json"))
    rule = store.add("terraform destroy*", "Destroys infrastructure")
    assert rule.id.startswith("custom-")
    assert match_sensitive_command("terraform destroy -auto-approve", store.load()).id == rule.id

    toggled = store.toggle(rule.id)
    assert not toggled.enabled
    assert match_sensitive_command("terraform destroy", store.load()) is None

    assert store.remove(rule.id)
    assert not store.remove(rule.id)


def test_store_merges_new_presets(tmp_path):
    path = tmp_path / "rules.json"
    custom = SensitiveCommand(id="custom-1", pattern="make clean*", description="")
    path.write_text(json.dumps({"commands": [custom.to_dict()]}))
    rules = SensitiveCommandStore(str(path)).load()
    assert rules[0].id == "custom-1"
    assert {p.id for p in PRESET_SENSITIVE_COMMANDS} <= {r.id for r in rules}


def test_store_reset_restores_defaults(tmp_path):
    store = SensitiveCommandStore(str(tmp_path / "rules.json"))
    store.toggle("rm")
    store.add("x*", "")
    rules = store.reset_to_defaults()
    assert len(rules) == len(PRESET_SENSITIVE_COMMANDS)
    assert next(r for r in store.load() if r.id == "rm").enabled


def test_update_unknown_rule_raises(tmp_path):
    store = SensitiveCommandStore(str(tmp_path / "rules.json"))
    with pytest.raises(KeyError):
        store.update("nope", enabled=False)
