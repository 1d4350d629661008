"""
BANDWIDTH RAIL - Serverless entry point.

Wraps the ASGI app for AWS Lambda / Vercel style handlers.
"""

import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src"))

from bandwidth_rail.api.server import app  # noqa: E402

handler = Mangum(app, lifespan="auto")
