"""Shelfwise Engine — errors, configuration, logging."""
