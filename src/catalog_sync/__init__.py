"""Sync locally registered SQL datasets into a remote BI dashboard catalog."""

__version__ = "0.1.0"
