"""Filesystem tools: read, create, edit (line range), edit_search (search/replace), delete."""

import difflib
import logging
from typing import Any, Dict, List, Optional

from backend import Backend
from tools._common import ToolOutput, _require

logger = logging.getLogger(__name__)

_MAX_FULL_READ_LINES = 500


def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Generate a compact unified diff for the tool result."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)
    diff = list(difflib.unified_diff(old_lines, new_lines, fromfile=path, tofile=path, lineterm=""))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip() for line in diff)


def mutation_targets(args: Dict[str, Any]) -> List[str]:
    """Every path a mutating filesystem call may touch (single or batch form)."""
    target = args.get("filePath", args.get("path"))
    if isinstance(target, str):
        return [target] if target.strip() else []
    paths: List[str] = []
    if isinstance(target, list):
        for item in target:
            if isinstance(item, str) and item.strip():
                paths.append(item)
            elif isinstance(item, dict):
                p = item.get("filePath", item.get("path"))
                if isinstance(p, str) and p.strip():
                    paths.append(p)
    return paths


def _batch_items(args: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Expand a batch call into per-file argument dicts sharing the top-level arguments."""
    shared = {k: v for k, v in args.items() if k not in ("filePath", "path")}
    items = []
    for item in args.get("filePath", args.get("path")) or []:
        if isinstance(item, str):
            items.append(dict(shared, filePath=item))
        elif isinstance(item, dict):
            merged = dict(shared)
            merged.update(item)
            merged["filePath"] = item.get("filePath", item.get("path", ""))
            items.append(merged)
    return items


def _run_batch(fn, args: Dict[str, Any], backend: Backend) -> ToolOutput:
    """Apply fn to each file in turn; one file failing does not stop the rest."""
    items = _batch_items(args)
    if not items:
        return ToolOutput(success=False, output="", error="filePath list is empty")
    lines = []
    results = []
    for item in items:
        single = fn(backend=backend, **item)
        entry: Dict[str, Any] = {"filePath": item["filePath"], "success": single.success}
        if not single.success:
            entry["error"] = single.error
        results.append(entry)
        if single.success:
            first = single.output.splitlines()[0] if single.output else "ok"
            lines.append(f"[{item['filePath']}] {first}")
        else:
            lines.append(f"[{item['filePath']}] failed: {single.error}")
    ok = sum(1 for r in results if r["success"])
    return ToolOutput(
        success=ok == len(results),
        output=f"{ok}/{len(results)} files updated\n" + "\n".join(lines),
        error=None if ok == len(results) else f"{len(results) - ok} of {len(results)} files failed",
        data={"results": results},
    )


def read_file(filePath: Any = "", backend: Optional[Backend] = None,
              startLine: Optional[int] = None, endLine: Optional[int] = None, **kw: Any) -> ToolOutput:
    """Read a file (or several). Returns line-numbered content."""
    if isinstance(filePath, list):
        parts = []
        for p in filePath:
            single = read_file(p, backend=backend, startLine=startLine, endLine=endLine)
            parts.append(f"=== {p} ===\n" + (single.output if single.success else f"Error: {single.error}"))
        return ToolOutput(success=True, output="\n\n".join(parts))

    err = _require(filePath, "filePath")
    if err:
        return err
    try:
        if not backend.is_file(filePath):
            return ToolOutput(success=False, output="", error=f"File not found: {filePath}")
        lines = backend.read_file(filePath).splitlines()
        total = len(lines)

        if startLine is not None or endLine is not None:
            start = max(int(startLine or 1), 1)
            end = min(int(endLine or total), total)
            selected = lines[start - 1:end]
            numbered = [f"{start + i:6}|{line}" for i, line in enumerate(selected)]
            header = f"[{total} lines total] (showing lines {start}-{start + len(selected) - 1})"
            return ToolOutput(success=True, output=header + "\n" + "\n".join(numbered))

        if total > _MAX_FULL_READ_LINES:
            numbered = [f"{i + 1:6}|{line}" for i, line in enumerate(lines[:_MAX_FULL_READ_LINES])]
            return ToolOutput(success=True, output=(
                f"[{total} lines total, showing first {_MAX_FULL_READ_LINES}; use startLine/endLine for more]\n"
                + "\n".join(numbered)
            ))
        numbered = [f"{i + 1:6}|{line}" for i, line in enumerate(lines)]
        return ToolOutput(success=True, output=f"[{total} lines total]\n" + "\n".join(numbered))
    except Exception as e:
        return ToolOutput(success=False, output="", error=str(e))


def create_file(filePath: str = "", content: str = "", backend: Optional[Backend] = None,
                overwrite: bool = False, **kw: Any) -> ToolOutput:
    """Create a new file. Refuses to replace an existing file unless overwrite is set."""
    err = _require(filePath, "filePath")
    if err:
        return err
    try:
        existed = backend.file_exists(filePath)
        if existed and not overwrite:
            return ToolOutput(success=False, output="",
                              error=f"File already exists: {filePath}. Use filesystem-edit to change it.")
        old_content = backend.read_file(filePath) if existed else ""
        backend.write_file(filePath, content)
        line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        summary = f"{'Wrote' if existed else 'Created'} {line_count} lines to {filePath}"
        if existed:
            diff_text = _compact_diff(old_content, content, filePath)
            return ToolOutput(success=True, output=f"{summary}\n{diff_text}" if diff_text else summary)
        return ToolOutput(success=True, output=summary)
    except Exception as e:
        return ToolOutput(success=False, output="", error=str(e))


def edit_lines(filePath: Any = "", startLine: Optional[int] = None, endLine: Optional[int] = None,
               newContent: str = "", backend: Optional[Backend] = None, **kw: Any) -> ToolOutput:
    """Replace lines startLine..endLine (1-based, inclusive) with newContent."""
    if isinstance(filePath, list):
        return _run_batch(edit_lines, dict(kw, filePath=filePath, startLine=startLine,
                                           endLine=endLine, newContent=newContent), backend)
    err = _require(filePath, "filePath")
    if err:
        return err
    if startLine is None or endLine is None:
        return ToolOutput(success=False, output="", error="startLine and endLine are required")
    try:
        if not backend.is_file(filePath):
            return ToolOutput(success=False, output="", error=f"File not found: {filePath}")
        content = backend.read_file(filePath)
        lines = content.splitlines(keepends=True)
        start, end = int(startLine), int(endLine)
        if start < 1 or end < start - 1 or start > len(lines) + 1:
            return ToolOutput(success=False, output="",
                              error=f"Invalid line range {start}-{end} for {filePath} ({len(lines)} lines)")
        end = min(end, len(lines))
        replacement = newContent
        if replacement and not replacement.endswith("\n") and end < len(lines):
            replacement += "\n"
        new_content = "".join(lines[:start - 1]) + replacement + "".join(lines[end:])
        backend.write_file(filePath, new_content)
        diff_text = _compact_diff(content, new_content, filePath)
        summary = f"Replaced lines {start}-{end} in {filePath}"
        return ToolOutput(success=True, output=f"{summary}\n{diff_text}" if diff_text else summary)
    except Exception as e:
        return ToolOutput(success=False, output="", error=str(e))


def edit_search(filePath: Any = "", searchContent: str = "", replaceContent: str = "",
                backend: Optional[Backend] = None, occurrence: Optional[int] = None,
                replaceAll: bool = False, **kw: Any) -> ToolOutput:
    """Replace an exact string in a file. By default it must match exactly one location.
    occurrence picks the n-th match; replaceAll replaces every match."""
    if isinstance(filePath, list):
        return _run_batch(edit_search, dict(kw, filePath=filePath, searchContent=searchContent,
                                            replaceContent=replaceContent, occurrence=occurrence,
                                            replaceAll=replaceAll), backend)
    err = _require(filePath, "filePath") or _require(searchContent, "searchContent")
    if err:
        return err
    try:
        if not backend.is_file(filePath):
            return ToolOutput(success=False, output="", error=f"File not found: {filePath}")
        content = backend.read_file(filePath)
        count = content.count(searchContent)
        if count == 0:
            return ToolOutput(success=False, output="",
                              error=f"searchContent not found in {filePath}. It must match exactly, "
                                    f"including whitespace. Re-read the file to see current content.")
        if replaceAll:
            new_content = content.replace(searchContent, replaceContent)
            replaced = count
        elif occurrence is not None:
            n = int(occurrence)
            if n < 1 or n > count:
                return ToolOutput(success=False, output="",
                                  error=f"occurrence {n} out of range (found {count} matches)")
            pos = -1
            for _ in range(n):
                pos = content.index(searchContent, pos + 1)
            new_content = content[:pos] + replaceContent + content[pos + len(searchContent):]
            replaced = 1
        elif count > 1:
            return ToolOutput(success=False, output="",
                              error=f"Found {count} occurrences of searchContent in {filePath}. Add more "
                                    f"context to make it unique, or set occurrence or replaceAll.")
        else:
            new_content = content.replace(searchContent, replaceContent, 1)
            replaced = 1
        backend.write_file(filePath, new_content)
        diff_text = _compact_diff(content, new_content, filePath)
        summary = f"Applied edit to {filePath}" + (f" ({replaced} replacements)" if replaced > 1 else "")
        return ToolOutput(success=True, output=f"{summary}\n{diff_text}" if diff_text else summary)
    except Exception as e:
        return ToolOutput(success=False, output="", error=str(e))


def delete_file(filePath: Any = "", backend: Optional[Backend] = None, **kw: Any) -> ToolOutput:
    """Delete a file (or several)."""
    if isinstance(filePath, list):
        return _run_batch(delete_file, dict(kw, filePath=filePath), backend)
    err = _require(filePath, "filePath")
    if err:
        return err
    try:
        if not backend.is_file(filePath):
            return ToolOutput(success=False, output="", error=f"Not a file: {filePath}")
        backend.remove_file(filePath)
        return ToolOutput(success=True, output=f"Deleted {filePath}")
    except Exception as e:
        return ToolOutput(success=False, output="", error=str(e))
