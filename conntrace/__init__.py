"""conntrace - capture request lifecycle timelines until a connection fails."""

__version__ = "0.1.0"
