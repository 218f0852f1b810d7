#!/usr/bin/env python3
"""
NdalamaHub Entry Point

Starts the FastAPI server with host and port taken from NDALAMA_* settings.
"""

import sys

from ndalama_hub.api import run_server
from ndalama_hub.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting NdalamaHub lending core...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down NdalamaHub...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
