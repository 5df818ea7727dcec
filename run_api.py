#!/usr/bin/env python3
"""
Script to run the record sharing API.
"""

import os
import logging

import uvicorn

from recordshare.constants import LOG_LEVEL

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

# Run the FastAPI application
if __name__ == "__main__":
    uvicorn.run(
        "recordshare.api:app",
        host=os.getenv("API_HOST", "0.0.0.0"),
        port=int(os.getenv("API_PORT", "8000")),
        reload=os.getenv("API_RELOAD", "false").lower() == "true",
    )
