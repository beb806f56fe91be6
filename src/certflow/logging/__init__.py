"""Logging subsystem for certflow.

Public API::

    from certflow.logging import configure_logging, log_context

    configure_logging(settings.logging)
"""

from certflow.logging.setup import configure_logging, log_context

__all__ = ["configure_logging", "log_context"]
