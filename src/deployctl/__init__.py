"""deployctl - deploy containerized applications to remote hosts over SSH."""

__version__ = "0.1.0"
