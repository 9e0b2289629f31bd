"""metrowatch: supervisor and log tailer for a bundler dev-server."""

__version__ = "0.3.0"
