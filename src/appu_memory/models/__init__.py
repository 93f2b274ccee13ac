"""Models for the MCP tool interface."""
