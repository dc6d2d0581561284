#!/usr/bin/env python3
"""Claude Island - Run the application.

Starts the hook socket listener and the HTTP API the UI talks to.

Usage:
    python run.py
    # Or: python -m island_core.app

The API will be available at http://localhost:5050/api
"""

from island_core.app import main

if __name__ == "__main__":
    main()
