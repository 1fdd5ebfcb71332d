"""Rolelink keeps guild roles in step with a game server's role grants."""

__version__ = "0.1.0"
