"""certflow: chat-driven DNS-01 certificate order manager."""

__version__ = "0.1.0"
