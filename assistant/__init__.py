"""Conversational assistant backend: message orchestration over a multi-agent system."""

__version__ = "0.1.0"
