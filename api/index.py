"""
METER RAIL - Vercel Serverless API

Serverless entry point wrapping the FastAPI app.
Background tick and rate-refresh drivers are off by default here: a
serverless function is not a long-lived process, so callers drive
metering through POST /sessions/{id}/advance.
"""

import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

os.environ.setdefault("METER_TICK_INTERVAL_MS", "0")
os.environ.setdefault("METER_RATE_REFRESH_SECONDS", "0")

from meter_rail.api.server import app  # noqa: E402
from meter_rail.log import configure_logging  # noqa: E402

configure_logging(os.environ.get("LOG_LEVEL", "INFO"), json_output=True)

# Vercel handler
handler = Mangum(app, lifespan="auto")
