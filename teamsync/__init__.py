"""Integration sync and contribution ranking for student project teams."""

__version__ = "0.1.0"
