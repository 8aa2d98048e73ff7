"""Google Sheets backed alumni record store."""

__version__ = "1.0.0"
