"""Local MongoDB replica set bootstrap for integration test runs."""

__version__ = "1.0.0"
