"""Sandboxed code-navigation tools: content search, file discovery and LSP lookups."""

__version__ = "0.3.0"
