#!/usr/bin/env python3
"""
Entry point for the cfs-controller CLI.
"""

import sys

from cfs_controller.cli import main

if __name__ == "__main__":
    sys.exit(main())
