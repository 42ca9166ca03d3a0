"""Agent identity for the dialler API."""
