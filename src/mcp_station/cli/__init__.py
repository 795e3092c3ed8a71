"""Command-line interface for MCP Station."""
