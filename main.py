"""
VPS Control Plane API
=====================

Main entry point for the VPS control plane service.

Endpoints (see vps_control/api.py for the full list):
- POST /api/webhook/stripe - Stripe webhook (public, signature verified)
- POST /api/checkout - Start an order
- POST /api/instances/{id}/power - Queue a power action
- GET /api/health - Health check
"""

import logging
import os

from dotenv import load_dotenv

# Load .env file if present (dev mode)
load_dotenv()

from vps_control.api import create_app
from vps_control.config import VPSControlConfig
from vps_control.logging_config import configure_logging

# Load centralized config from environment
config = VPSControlConfig.from_env()
configure_logging(config.log_level, config.log_format)

logger = logging.getLogger(__name__)

app = create_app(config)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8001")))
