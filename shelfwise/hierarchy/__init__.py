"""Shelfwise folder hierarchy — path arithmetic, folder and item services."""
