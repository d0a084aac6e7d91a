#!/usr/bin/env python3
"""
Start the OnlyAccess backend development server
"""

import logging
import sys

from app import create_app
from config.settings import Settings

logger = logging.getLogger(__name__)

if __name__ == '__main__':
    settings = Settings.from_env()
    app = create_app(settings)

    logger.info("Starting OnlyAccess backend...")
    logger.info(f"Payment provider: {settings.PAYMENT_PROVIDER}")
    logger.info(f"Scheduler enabled: {settings.SCHEDULER_ENABLED}")
    logger.info("Server will be available at: http://localhost:5000")

    try:
        # The reloader would start a second scheduler in the child process
        app.run(debug=True, host='0.0.0.0', port=5000, use_reloader=False)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        sys.exit(0)
