"""
MxL Telemetry API Entry Point

Use this file for deployment:
  uvicorn main:app --host 0.0.0.0 --port $PORT
"""

import logging

from api_server import create_app
from mxl.config import Settings
from mxl.context import build_context

settings = Settings.from_env()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format='%(asctime)s - %(levelname)s - %(message)s',
)

app = create_app(build_context(settings), run_background=True)


# For local development
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
