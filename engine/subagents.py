"""
Sub-agent definitions.

A sub-agent is invoked through a tool named `subagent-<agent id>` whose
`prompt` argument carries the whole task. It runs its own loop against an
isolated message list with a restricted tool set.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from engine.events import SUB_AGENT_PREFIX

_ISOLATION_NOTE = (
    "\n\nIMPORTANT: You have NO access to the main conversation history. The prompt "
    "provided to you contains ALL the context from the main session. Read it carefully "
    "and do not assume any additional context."
)


@dataclass
class SubAgentSpec:
    id: str
    name: str
    description: str
    role: str = ""
    tools: List[str] = field(default_factory=list)
    builtin: bool = False

    @property
    def tool_name(self) -> str:
        return sub_agent_tool_name(self.id)

    def build_prompt(self, prompt: str) -> str:
        return f"{prompt}\n\n{self.role}" if self.role else prompt


BUILTIN_SUB_AGENTS: List[SubAgentSpec] = [
    SubAgentSpec(
        id="agent_explore",
        name="Explore Agent",
        description="Explores the codebase to locate code, understand structure and trace dependencies. Read-only.",
        role=(
            "You are a specialized code exploration agent. Help locate code and explain how it is "
            "structured. Read files and notes, but do not modify any files or execute commands. "
            "Report findings with specific file paths and line numbers." + _ISOLATION_NOTE
        ),
        tools=["filesystem-read", "notebook-query"],
        builtin=True,
    ),
    SubAgentSpec(
        id="agent_plan",
        name="Plan Agent",
        description="Analyzes requirements and existing code and produces a step-by-step implementation plan. Read-only.",
        role=(
            "You are a specialized task planning agent. Analyze the requirements, explore the "
            "existing code and produce a clear step-by-step plan listing the files to change and "
            "the approach for each. Do not make any modifications." + _ISOLATION_NOTE
        ),
        tools=["filesystem-read", "notebook-query", "todo-get"],
        builtin=True,
    ),
    SubAgentSpec(
        id="agent_general",
        name="General Purpose Agent",
        description="Executes multi-step tasks with file editing and command execution.",
        role=(
            "You are a general-purpose task execution agent. Break the task down and carry it "
            "out, reading and modifying files and running commands as needed." + _ISOLATION_NOTE
        ),
        tools=[
            "filesystem-read",
            "filesystem-create",
            "filesystem-edit",
            "filesystem-edit_search",
            "terminal-execute",
            "notebook-query",
        ],
        builtin=True,
    ),
]


def sub_agent_tool_name(agent_id: str) -> str:
    return f"{SUB_AGENT_PREFIX}{agent_id}"


def agent_id_from_tool_name(tool_name: str) -> str:
    if not tool_name.startswith(SUB_AGENT_PREFIX):
        raise ValueError(f"Not a sub-agent tool: {tool_name}")
    return tool_name[len(SUB_AGENT_PREFIX):]


def get_sub_agent(agent_id: str, custom: Optional[Iterable[SubAgentSpec]] = None) -> Optional[SubAgentSpec]:
    """Look up an agent; custom definitions shadow built-ins with the same id."""
    for spec in list(custom or []) + BUILTIN_SUB_AGENTS:
        if spec.id == agent_id:
            return spec
    return None


def list_sub_agents(custom: Optional[Iterable[SubAgentSpec]] = None) -> List[SubAgentSpec]:
    seen: Dict[str, SubAgentSpec] = {}
    for spec in list(custom or []) + BUILTIN_SUB_AGENTS:
        seen.setdefault(spec.id, spec)
    return list(seen.values())


def is_tool_allowed(spec: SubAgentSpec, tool_name: str) -> bool:
    """Underscore/hyphen-insensitive exact match, or prefix match ("filesystem" allows "filesystem-read")."""
    if tool_name.startswith(SUB_AGENT_PREFIX):
        return False
    name = tool_name.replace("_", "-")
    for allowed in spec.tools:
        allowed = allowed.replace("_", "-")
        if name == allowed or name.startswith(f"{allowed}-"):
            return True
    return False


def filter_tools(spec: SubAgentSpec, tool_names: Iterable[str]) -> List[str]:
    return [name for name in tool_names if is_tool_allowed(spec, name)]
