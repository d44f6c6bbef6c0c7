#!/usr/bin/env python3
"""
Carousel Image Proxy 服务启动脚本
"""
import os
import sys
import logging
import uvicorn
from dotenv import load_dotenv

load_dotenv()

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from carousel_proxy.main import app

logger = logging.getLogger("CarouselProxy.Runner")


def main():
    """启动 Carousel Image Proxy 服务器"""
    try:
        host = os.getenv("HOST", "0.0.0.0")
        port = int(os.getenv("PORT", "7860"))
        log_level = os.getenv("LOG_LEVEL", "info").lower()

        logger.info(f"Starting Carousel Image Proxy on {host}:{port} (log level {log_level.upper()})")

        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level=log_level,
            access_log=False,
            loop="asyncio"
        )

    except KeyboardInterrupt:
        logger.info("Server shutdown requested by user (Ctrl+C)")
    except Exception as e:
        logger.error(f"Failed to start server: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
