"""Subcommands of the termport CLI."""
