"""Flask application package for certflow.

Public API::

    from certflow.app import create_app
"""

from certflow.app.factory import create_app

__all__ = ["create_app"]
