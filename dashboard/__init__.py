"""Stockbook web dashboard.

Run with:
  python -m dashboard
"""

import logging
import os

from stockbook import config as app_config
from .server import create_app  # re-export factory


def main():
    logging.basicConfig(
        level=app_config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app()
    host = os.getenv("DASHBOARD_HOST", "127.0.0.1")
    try:
        port = int(os.getenv("DASHBOARD_PORT", "8000"))
    except ValueError:
        port = 8000
    debug = os.getenv("FLASK_DEBUG", "").lower() in ("1", "true", "yes")
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    main()
