"""
Sensitive shell-command rules.

A rule pattern uses `*` as a wildcard and is matched, case-insensitively,
against the start of the whitespace-collapsed command and of each command
chained into it with `;`, `&&`, `||`, `|` or a newline. Rules persist in a
JSON file; presets are seeded on first load and new presets are merged
into an existing file.
"""

import json
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass, asdict, replace
from typing import Any, Dict, List, Optional

from config import sensitive_commands_path

logger = logging.getLogger(__name__)


@dataclass
class SensitiveCommand:
    id: str
    pattern: str
    description: str
    enabled: bool = True
    is_preset: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SensitiveCommand":
        return cls(
            id=str(data["id"]),
            pattern=str(data["pattern"]),
            description=str(data.get("description", "")),
            enabled=bool(data.get("enabled", True)),
            is_preset=bool(data.get("is_preset", False)),
        )


def _preset(id: str, pattern: str, description: str, enabled: bool = True) -> SensitiveCommand:
    return SensitiveCommand(id=id, pattern=pattern, description=description, enabled=enabled, is_preset=True)


PRESET_SENSITIVE_COMMANDS: List[SensitiveCommand] = [
    _preset("rm", "rm*", "Delete files or directories (rm, rm -rf, etc.)"),
    _preset("rmdir", "rmdir*", "Remove directories"),
    _preset("mv-to-trash", "mv * /tmp*", "Move files to trash/tmp (potential data loss)"),
    _preset("chmod", "chmod*", "Change file permissions"),
    _preset("chown", "chown*", "Change file ownership"),
    _preset("dd", "dd*", "Low-level data copy (disk operations)"),
    _preset("mkfs", "mkfs*", "Format filesystem"),
    _preset("fdisk", "fdisk*", "Disk partition manipulation"),
    _preset("killall", "killall*", "Kill all processes by name"),
    _preset("pkill", "pkill*", "Kill processes by pattern"),
    _preset("reboot", "reboot*", "Reboot the system"),
    _preset("shutdown", "shutdown*", "Shutdown the system"),
    _preset("sudo", "sudo*", "Execute commands with superuser privileges"),
    _preset("su", "su*", "Switch user"),
    _preset("curl-post", "curl*-X POST*", "HTTP POST requests (potential data transmission)", enabled=False),
    _preset("wget", "wget*", "Download files from internet", enabled=False),
    _preset("git-push", "git push*", "Push code to remote repository", enabled=False),
    _preset("git-force-push", "git push*--force*", "Force push to remote repository (destructive)"),
    _preset("npm-publish", "npm publish*", "Publish package to npm registry"),
    _preset("docker-rm", "docker rm*", "Remove Docker containers", enabled=False),
    _preset("docker-rmi", "docker rmi*", "Remove Docker images", enabled=False),
]


def default_rules() -> List[SensitiveCommand]:
    return [replace(rule) for rule in PRESET_SENSITIVE_COMMANDS]


def pattern_to_regex(pattern: str) -> "re.Pattern[str]":
    """`*` matches anything, everything else is literal; anchored at the start."""
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile("^" + body, re.IGNORECASE)


def normalize_command(command: str) -> str:
    return re.sub(r"\s+", " ", command.strip())


_CHAIN_SEPARATORS = re.compile(r"\|\||&&|[;|\n]")


def command_segments(command: str) -> List[str]:
    """The whole command followed by every chained command in it."""
    segments = [normalize_command(command)]
    for part in _CHAIN_SEPARATORS.split(command):
        clean = normalize_command(part)
        if clean and clean not in segments:
            segments.append(clean)
    return segments


def match_sensitive_command(command: str, rules: List[SensitiveCommand]) -> Optional[SensitiveCommand]:
    """Return the first enabled rule matching `command`, or None.

    Errors propagate; callers decide how to fail.
    """
    segments = command_segments(command)
    for rule in rules:
        if not rule.enabled:
            continue
        regex = pattern_to_regex(rule.pattern)
        if any(regex.search(segment) for segment in segments):
            return rule
    return None


class SensitiveCommandStore:
    """Manages the sensitive-command rule file on disk."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or sensitive_commands_path()

    def load(self) -> List[SensitiveCommand]:
        if not os.path.exists(self.path):
            rules = default_rules()
            self.save(rules)
            return rules

        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        rules = [SensitiveCommand.from_dict(item) for item in data.get("commands", [])]

        existing = {rule.id for rule in rules}
        new_presets = [replace(p) for p in PRESET_SENSITIVE_COMMANDS if p.id not in existing]
        if new_presets:
            logger.info(f"Merging {len(new_presets)} new preset sensitive commands into {self.path}")
            rules.extend(new_presets)
            self.save(rules)
        return rules

    def save(self, rules: List[SensitiveCommand]) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = self.path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump({"commands": [r.to_dict() for r in rules]}, f, indent=2)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def add(self, pattern: str, description: str) -> SensitiveCommand:
        rules = self.load()
        rule = SensitiveCommand(
            id=f"custom-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}",
            pattern=pattern,
            description=description,
        )
        rules.append(rule)
        self.save(rules)
        return rule

    def remove(self, rule_id: str) -> bool:
        rules = self.load()
        kept = [r for r in rules if r.id != rule_id]
        if len(kept) == len(rules):
            return False
        self.save(kept)
        return True

    def update(self, rule_id: str, **changes: Any) -> SensitiveCommand:
        """Update pattern/description/enabled of a rule. id and is_preset are fixed."""
        rules = self.load()
        for i, rule in enumerate(rules):
            if rule.id == rule_id:
                allowed = {k: v for k, v in changes.items() if k in ("pattern", "description", "enabled")}
                rules[i] = replace(rule, **allowed)
                self.save(rules)
                return rules[i]
        raise KeyError(f'Sensitive command with id "{rule_id}" not found')

    def toggle(self, rule_id: str) -> SensitiveCommand:
        rules = self.load()
        for rule in rules:
            if rule.id == rule_id:
                rule.enabled = not rule.enabled
                self.save(rules)
                return rule
        raise KeyError(f'Sensitive command with id "{rule_id}" not found')

    def reset_to_defaults(self) -> List[SensitiveCommand]:
        rules = default_rules()
        self.save(rules)
        return rules
