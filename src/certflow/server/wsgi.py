"""WSGI entry point for external servers.

The config file path is read from the ``CERTFLOW_CONFIG`` environment
variable.

Example::

    export CERTFLOW_CONFIG=/etc/certflow/config.yaml
    gunicorn "certflow.server.wsgi:app"
"""

from __future__ import annotations

import os
import sys

_config_path = os.environ.get("CERTFLOW_CONFIG")
if _config_path is None:
    sys.stderr.write("CERTFLOW_CONFIG is not set\n")
    sys.exit(1)

# The config singleton must exist before anything calls get_config().
from certflow.config import CertflowConfig  # noqa: E402

_config = CertflowConfig(config_file=_config_path)

from certflow.logging import configure_logging  # noqa: E402

configure_logging(_config.settings.logging)

from certflow.db import init_database  # noqa: E402

_db = init_database(_config.settings.database)

from certflow.app import create_app  # noqa: E402

app = create_app(config=_config, database=_db)
