# shipyard/__main__.py
"""
Entry point for `python -m shipyard`.

The scheduler spawns every pipeline run through this module so the child
interpreter matches the daemon's.
"""

from shipyard.cli import app

if __name__ == "__main__":
    app()
