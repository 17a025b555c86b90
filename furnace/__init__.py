"""furnace: local PHP development environments behind nginx or apache."""

__version__ = "0.1.0"
