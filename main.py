#!/usr/bin/env python3
"""
cartserver: FastAPI service for cartridge manifests, archives and builds.
Configuration comes from CART_* environment variables (see cartserver/config.py).
"""
import os

import uvicorn

from cartserver.app import create_app

LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))

app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host=LISTEN_HOST, port=PORT)
