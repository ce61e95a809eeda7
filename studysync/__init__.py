"""Two-way study session sync against a CalDAV calendar, with missed-session replanning."""

__version__ = "0.1.0"
