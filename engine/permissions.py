"""
Permission gate: decides which tool calls may run without asking the user.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from engine.events import PermissionDecision, ToolCall
from engine.resources import TERMINAL_TOOLS
from engine.sensitive_commands import SensitiveCommand, SensitiveCommandStore, match_sensitive_command

logger = logging.getLogger(__name__)


def check_permission(
    tool_name: str,
    args: Dict[str, Any],
    unattended: bool,
    rules: Optional[List[SensitiveCommand]] = None,
) -> PermissionDecision:
    """Decide whether one call needs user confirmation.

    Attended mode always asks. Unattended mode runs everything except
    terminal commands matching an enabled sensitive rule. Any failure while
    loading or matching rules is treated as a sensitive match.
    """
    if not unattended:
        return PermissionDecision(needs_confirmation=True, is_sensitive=False)

    if tool_name not in TERMINAL_TOOLS:
        return PermissionDecision(needs_confirmation=False, is_sensitive=False)

    command = (args or {}).get("command")
    if not isinstance(command, str):
        return PermissionDecision(needs_confirmation=False, is_sensitive=False)

    try:
        active_rules = rules if rules is not None else SensitiveCommandStore().load()
        matched = match_sensitive_command(command, active_rules)
    except Exception as e:
        logger.warning(f"Sensitive-command check failed for {command!r}, requiring confirmation: {e}")
        return PermissionDecision(needs_confirmation=True, is_sensitive=True)

    if matched:
        return PermissionDecision(needs_confirmation=True, is_sensitive=True, matched_rule=matched)
    return PermissionDecision(needs_confirmation=False, is_sensitive=False)


def filter_by_sensitivity(
    calls: List[ToolCall],
    unattended: bool,
    rules: Optional[List[SensitiveCommand]] = None,
) -> Tuple[List[Tuple[ToolCall, PermissionDecision]], List[ToolCall]]:
    """Split a batch into (sensitive calls with their decisions, non-sensitive calls)."""
    if rules is None and unattended:
        try:
            rules = SensitiveCommandStore().load()
        except Exception as e:
            # leave rules unset; check_permission reloads and fails closed per call
            logger.warning(f"Could not load sensitive-command rules: {e}")

    sensitive: List[Tuple[ToolCall, PermissionDecision]] = []
    non_sensitive: List[ToolCall] = []
    for call in calls:
        decision = check_permission(call.name, call.parsed_arguments(), unattended, rules)
        if decision.is_sensitive:
            sensitive.append((call, decision))
        else:
            non_sensitive.append(call)
    return sensitive, non_sensitive


class ApprovalMemory:
    """Tools the user approved for the rest of the session ("approve always").

    Read-only tools may be pre-approved. A remembered approval never covers
    a terminal command that matches a sensitive rule.
    """

    def __init__(self, read_only_tools: Iterable[str] = (), rules: Optional[List[SensitiveCommand]] = None):
        self._approved: Set[str] = set(read_only_tools)
        self._rules = rules

    def remember(self, tool_name: str) -> None:
        self._approved.add(tool_name)

    def covers(self, call: ToolCall, decision: PermissionDecision) -> bool:
        if decision.is_sensitive or call.name not in self._approved:
            return False
        if call.name in TERMINAL_TOOLS:
            # attended mode never matched rules, so check here
            strict = check_permission(call.name, call.parsed_arguments(), unattended=True, rules=self._rules)
            return not strict.is_sensitive
        return True

    @property
    def approved_tools(self) -> Set[str]:
        return set(self._approved)
