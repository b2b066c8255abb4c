"""
Tool-call detection for Qodo Command output.

The CLI renders narrative text, tool invocations and tool results as plain text
with box-drawing prefixes, for example::

    ┌─ read_files
    ├── paths: package.json
    └─── ✓ ✓ Success: File read successfully

Nothing in the stream marks where a tool call ends, so detection is a per-chunk
heuristic. A tool call is reported ``pending`` unless its success or failure
marker arrives in the same chunk as the opening marker.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from .models import Fragment, TextFragment, ToolCallFragment, ToolCallStatus

logger = logging.getLogger(__name__)

DEFAULT_KNOWN_TOOLS: Tuple[str, ...] = (
    "read_files",
    "list_files",
    "list_files_in_directories",
    "directory_tree",
    "write_file",
    "create_file",
    "delete_file",
    "move_file",
    "get_current_directory",
    "search_files",
    "replace_in_file",
)

_STATUS_EMOJI = {
    ToolCallStatus.SUCCESS: "✅",
    ToolCallStatus.ERROR: "❌",
    ToolCallStatus.PENDING: "⏳",
}


class ToolVocabularyError(ValueError):
    """Raised when a tool vocabulary file is invalid."""


@dataclass(frozen=True)
class ToolMarkers:
    """Text markers the CLI uses to draw tool blocks."""

    open: str = "┌─"
    success: str = "✓ ✓"
    failure: str = "✗ ✗"
    continuation: Tuple[str, ...] = ("├──", "└──", "│")


@dataclass
class ToolVocabulary:
    """Known tool names plus the markers used to find them."""

    tools: List[str] = field(default_factory=lambda: list(DEFAULT_KNOWN_TOOLS))
    markers: ToolMarkers = field(default_factory=ToolMarkers)

    def add(self, *names: str) -> None:
        for name in names:
            if name and name not in self.tools:
                self.tools.append(name)

    def __contains__(self, name: object) -> bool:
        return name in self.tools


def _read_yaml_file(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Failed to read tool vocabulary %s: %s", path, exc)
        raise ToolVocabularyError(f"Failed to read tool vocabulary {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ToolVocabularyError(
            f"YAML root must be a mapping, got {type(data).__name__}"
        )
    return data


def _string_list(value: Any, key: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ToolVocabularyError(f"'{key}' must be a list of strings")
    return list(value)


def load_tool_vocabulary(path: Optional[Path] = None) -> ToolVocabulary:
    """Build the vocabulary, optionally extended or replaced by a YAML file."""
    vocabulary = ToolVocabulary()
    if path is None:
        return vocabulary

    data = _read_yaml_file(path)

    mode = data.get("mode", "extend")
    if mode not in ("extend", "replace"):
        raise ToolVocabularyError(f"Unsupported vocabulary mode '{mode}'")

    tools = _string_list(data.get("tools"), "tools")
    if mode == "replace":
        vocabulary.tools = []
    vocabulary.add(*tools)

    markers = data.get("markers") or {}
    if not isinstance(markers, dict):
        raise ToolVocabularyError("'markers' must be a mapping")
    defaults = ToolMarkers()
    continuation = _string_list(markers.get("continuation"), "markers.continuation")
    vocabulary.markers = ToolMarkers(
        open=str(markers.get("open", defaults.open)),
        success=str(markers.get("success", defaults.success)),
        failure=str(markers.get("failure", defaults.failure)),
        continuation=tuple(continuation) or defaults.continuation,
    )

    logger.info(
        "Loaded tool vocabulary",
        extra={"path": str(path), "mode": mode, "tool_count": len(vocabulary.tools)},
    )
    return vocabulary


class ToolCallParser:
    """Classify raw CLI output chunks into display fragments."""

    def __init__(self, vocabulary: Optional[ToolVocabulary] = None) -> None:
        self.vocabulary = vocabulary or ToolVocabulary()

    def _opening_pattern(self) -> "re.Pattern[str]":
        # Rebuilt per call so that vocabulary edits take effect immediately.
        return re.compile(
            r"^\s*" + re.escape(self.vocabulary.markers.open) + r"\s*([\w.:-]+)",
            re.MULTILINE,
        )

    def find_tool(self, text: str) -> Optional[str]:
        """Return the first known tool whose opening marker appears in ``text``."""
        for match in self._opening_pattern().finditer(text):
            name = match.group(1)
            if name in self.vocabulary:
                return name
        return None

    def _status(self, text: str) -> ToolCallStatus:
        markers = self.vocabulary.markers
        if markers.success in text:
            return ToolCallStatus.SUCCESS
        if markers.failure in text:
            return ToolCallStatus.ERROR
        return ToolCallStatus.PENDING

    def _is_continuation_only(self, text: str) -> bool:
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        if not lines:
            return False
        prefixes = self.vocabulary.markers.continuation
        return all(line.startswith(prefixes) for line in lines)

    def parse_chunk(self, text: str) -> List[Fragment]:
        tool_name = self.find_tool(text)
        if tool_name is not None:
            return [ToolCallFragment(tool_name=tool_name, status=self._status(text))]

        if self._is_continuation_only(text):
            return []

        return [TextFragment(text=text)]

    def has_tool_call_pattern(self, text: str) -> bool:
        return self.find_tool(text) is not None


def format_tool_call(fragment: ToolCallFragment) -> str:
    return f"{_STATUS_EMOJI[fragment.status]} Tool call: {fragment.tool_name}\n"


def render_fragments(fragments: Iterable[Fragment]) -> List[str]:
    """Display text for each fragment, in order."""
    rendered: List[str] = []
    for fragment in fragments:
        if isinstance(fragment, ToolCallFragment):
            rendered.append(format_tool_call(fragment))
        else:
            rendered.append(fragment.text)
    return rendered
