"""Top SQL storage, query and request handling for database cluster monitoring."""

__version__ = "0.1.0"