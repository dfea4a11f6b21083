from __future__ import annotations

import re
from typing import Iterable, Iterator, Tuple

from .base import SupportTool

__all__ = ["normalize_tool_name", "ToolRegistry"]


_SEPARATORS = re.compile(r"[\\/\s.]+")


def normalize_tool_name(name: str) -> str:
    """Lower-case lookup key; slashes, dots and whitespace all collapse to one dot."""
    if not isinstance(name, str):
        raise TypeError("Tool name must be a string")
    return ".".join(part for part in _SEPARATORS.split(name.strip().lower()) if part)


class ToolRegistry:
    """Tools by canonical name, plus dotted aliases such as ``order.details``."""

    def __init__(self, tools: Iterable[SupportTool] = ()) -> None:
        self._tools: dict[str, SupportTool] = {}
        # alias as declared -> canonical tool name
        self._aliases: dict[str, str] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: SupportTool, *, aliases: Iterable[str] | None = None) -> None:
        key = normalize_tool_name(tool.name)
        existing = self._tools.get(key)
        if existing is not None and existing is not tool:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        self._tools[key] = tool
        for alias in (*tool.aliases, *(aliases or ())):
            alias = alias.strip()
            if alias:
                self._aliases[alias] = tool.name

    def get(self, name: str) -> SupportTool | None:
        wanted = normalize_tool_name(name)
        tool = self._tools.get(wanted)
        if tool is not None:
            return tool
        for alias, target in self._aliases.items():
            if normalize_tool_name(alias) == wanted:
                return self._tools.get(normalize_tool_name(target))
        return None

    def resolve(self, name: str) -> str | None:
        """Canonical name for ``name`` or one of its aliases."""
        tool = self.get(name)
        return None if tool is None else tool.name

    def list(self) -> list[str]:
        return sorted(tool.name for tool in self._tools.values())

    def aliases(self) -> dict[str, str]:
        return {alias: self._aliases[alias] for alias in sorted(self._aliases)}

    def items(self) -> Iterator[Tuple[str, SupportTool]]:
        for tool in self._tools.values():
            yield tool.name, tool

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __len__(self) -> int:
        return len(self._tools)
