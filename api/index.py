"""WSGI entry point for serverless hosting (``api/index.py`` is the function handler)."""

import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app  # noqa: E402

try:
    app = create_app()
except RuntimeError:
    # Production config validation failures surface in the platform's function log.
    logging.getLogger("tutor_portal").exception("Tutor portal failed to start")
    raise
