"""trace-store: turns a flat stream of reported spans into queryable traces."""

__version__ = "0.1.0"
