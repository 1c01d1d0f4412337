import logging

from app import create_app

logger = logging.getLogger(__name__)

try:
    # gunicorn wsgi:app
    app = create_app()
    logger.info("WSGI application instance created.")
except Exception:
    logger.exception("Failed to create the WSGI application")
    raise
