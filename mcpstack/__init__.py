"""mcpstack - deterministic rebuild of a local MCP server stack."""

__version__ = "1.0.0"
