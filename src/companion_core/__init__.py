"""Persistence and generation core for a chat companion."""
