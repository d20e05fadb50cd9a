"""
Entry point for running BananaFlow as a module.

Usage:
    python -m bananaflow
"""

import sys

from bananaflow.main import main

if __name__ == "__main__":
    sys.exit(main())
