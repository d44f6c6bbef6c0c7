import sys
import os
from pathlib import Path

# Serverless 入口：确保项目根目录在 Python 路径中
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

os.environ.setdefault("LOG_LEVEL", "INFO")

from carousel_proxy.main import app

__all__ = ["app"]
