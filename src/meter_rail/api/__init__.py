"""
METER RAIL - API Module

FastAPI server exposing:
- Session metering
- Settlement and refunds
- Rate snapshots
- Payer spending caps
- Live update websocket
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
