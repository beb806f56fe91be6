"""Database subsystem for certflow.

Public API::

    from certflow.db import init_database, UnitOfWork
"""

from certflow.db.init import init_database
from certflow.db.unit_of_work import UnitOfWork

__all__ = [
    "UnitOfWork",
    "init_database",
]
