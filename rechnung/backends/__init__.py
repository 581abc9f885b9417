"""Billing backends registered as MCP tools."""
