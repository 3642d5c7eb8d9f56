"""gradesync: offline-first sync service for school assessment records."""

__version__ = "0.1.0"
