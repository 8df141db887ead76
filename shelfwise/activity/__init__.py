"""Shelfwise activity trail."""
