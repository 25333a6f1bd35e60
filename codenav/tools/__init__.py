"""Tools package initialization"""

from .base import Tool, ToolOutcome, ToolParameter, ToolRegistry

__all__ = ["Tool", "ToolOutcome", "ToolParameter", "ToolRegistry"]
