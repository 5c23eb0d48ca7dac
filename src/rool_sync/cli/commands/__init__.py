"""CLI command modules for rool."""
