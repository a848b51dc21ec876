"""Identity resolution and unique-user metrics engine."""

__version__ = "0.1.0"
