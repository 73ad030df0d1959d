#!/usr/bin/env python3
"""
Core Ledger Entry Point

Starts the FastAPI server for the ledger service. Host, port and database
come from LEDGER_* environment variables (see core_ledger/config.py).
"""

import sys

from core_ledger.api import run_server
from core_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Core Ledger...")
    print(f"Database: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)  # Set to True for development
    except KeyboardInterrupt:
        print("\nShutting down Core Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
