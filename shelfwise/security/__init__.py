"""Shelfwise access control — resolver and grant management."""
