"""spac - rule-based upstream proxy selection."""

__version__ = "0.1.0"
