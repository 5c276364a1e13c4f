"""
Tool Usage for ListLoop.

Per-tool records of which research tools contributed to an item's
research, with the confidence each tool reported. Records are stored on
the outcome as plain dicts (JSON column) and rebuilt with from_dict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class ToolUsageRecord:
    """One research tool's contribution to one item."""

    tool_type: str
    confidence: float
    fields_provided: list[str] = field(default_factory=list)
    cost: float | None = None
    executed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "tool_type": self.tool_type,
            "confidence": self.confidence,
        }
        # Optional keys are only carried when the provider supplied them
        if self.fields_provided:
            data["fields_provided"] = list(self.fields_provided)
        if self.cost is not None:
            data["cost"] = self.cost
        if self.executed_at is not None:
            data["executed_at"] = self.executed_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolUsageRecord:
        return cls(
            tool_type=str(data["tool_type"]),
            confidence=float(data.get("confidence") or 0.0),
            fields_provided=list(data.get("fields_provided") or []),
            cost=data.get("cost"),
            executed_at=data.get("executed_at"),
        )


@runtime_checkable
class ToolUsageProvider(Protocol):
    """Source of per-tool usage for an item."""

    async def get_tool_usage(self, item_id: str) -> list[ToolUsageRecord]: ...


class NullToolUsageProvider:
    """Default provider: no per-tool usage is known."""

    async def get_tool_usage(self, item_id: str) -> list[ToolUsageRecord]:
        return []


class StaticToolUsageProvider:
    """Provider backed by a fixed item_id -> records mapping."""

    def __init__(self, usage: dict[str, list[ToolUsageRecord]] | None = None) -> None:
        self._usage: dict[str, list[ToolUsageRecord]] = dict(usage or {})

    def set_usage(self, item_id: str, records: list[ToolUsageRecord]) -> None:
        self._usage[item_id] = list(records)

    async def get_tool_usage(self, item_id: str) -> list[ToolUsageRecord]:
        return list(self._usage.get(item_id, []))


__all__ = [
    "ToolUsageRecord",
    "ToolUsageProvider",
    "NullToolUsageProvider",
    "StaticToolUsageProvider",
]
