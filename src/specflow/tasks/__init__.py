"""tasks.md parsing and checkbox mutation."""
