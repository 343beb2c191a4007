#!/usr/bin/env python3
"""
CiliKube backend server
"""

import uvicorn
from dotenv import load_dotenv

# .env must be loaded before settings are first read
load_dotenv()

from cilikube.config import get_app_config, get_settings
from cilikube.core.logging import setup_logging

settings = get_settings()
app_config = get_app_config()
setup_logging(settings, debug=app_config.server.mode == "debug")

if __name__ == "__main__":
    uvicorn.run(
        "cilikube.main:app",
        host="0.0.0.0",
        port=app_config.server.port,
        reload=app_config.server.mode == "debug",
        log_level=settings.log_level.lower(),
        log_config=None,
    )
