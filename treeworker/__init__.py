"""Coding-agent worker building blocks: tree entries, context building, think-block splitting, context files, an LLM pipe client and LSP diagnostics."""

__version__ = "0.1.0"