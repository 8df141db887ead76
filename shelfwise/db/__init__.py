"""Shelfwise store — declarative base, models, sessions."""
