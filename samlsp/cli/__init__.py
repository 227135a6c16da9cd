"""CLI commands for samlsp."""
