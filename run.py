#!/usr/bin/env python3
"""
Micro-Loan Back Office Entry Point

Starts the FastAPI server with the host, port and database from MICROLOANS_* settings.
"""

import sys

from microloans.api import run_server


if __name__ == "__main__":
    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Micro-Loan Back Office...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
