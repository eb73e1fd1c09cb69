"""reqchain - scriptable HTTP client with request chaining."""

__version__ = "0.1.0"
