import sys
from pathlib import Path

# Make the package importable when running from a checkout
sys.path.append(str(Path(__file__).resolve().parent))

import asyncio
import logging
import platform

import uvicorn
from dispatch_engine.core.config import settings
from dispatch_engine.core.init_db import init_db

# Windows: use SelectorEventLoop instead of ProactorEventLoop
if platform.system() == 'Windows':
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)

    # Create tables
    asyncio.run(init_db())

    # reload=True ignores host, keep it off for network access
    uvicorn.run(
        "dispatch_engine.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=False,
        log_level=settings.LOG_LEVEL.lower(),
    )
