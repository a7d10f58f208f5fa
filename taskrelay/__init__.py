"""taskrelay: pipeline state machine and workflow engine for agent-driven tasks."""

__version__ = "0.1.0"
