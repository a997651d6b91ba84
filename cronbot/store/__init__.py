"""File-backed persistence for agent definitions and run history."""
