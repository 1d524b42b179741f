#!/usr/bin/env python3
"""
Core Ledger Entry Point

Starts the FastAPI server with the core ledger. Host, port, storage and
secrets come from LEDGER_* environment variables or a .env file.
"""

import sys

from core_ledger.api import run_server
from core_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Core Ledger...")
    print(f"Storage: {config.storage_backend} ({config.database_path})")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Core Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
