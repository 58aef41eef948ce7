"""Agent Farm: orchestration of architect, builder and shell agent sessions."""

__version__ = "0.1.0"
