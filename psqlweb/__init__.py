"""Browser-facing PostgreSQL console and stored-procedure runner."""

__version__ = "0.1.0"
