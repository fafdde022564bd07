"""Registry, installer and runner for portable Linux packages."""

__version__ = "0.1.0"