"""Seadexerr - Torznab bridge between Sonarr/Radarr and SeaDex releases."""

__version__ = "1.0.0"
