#!/usr/bin/env python3
"""
E-Wallet Ledger Entry Point

Starts the FastAPI server over the configured SQLite store.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from ewallet.api import run_server
from ewallet.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print(f"Starting e-wallet ledger on http://{settings.api_host}:{settings.api_port}")
    print(f"Store: {settings.database_path}")

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down e-wallet ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
