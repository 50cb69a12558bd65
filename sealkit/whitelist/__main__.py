"""Whitelist CLI entry point: python -m sealkit.whitelist"""

from __future__ import annotations

import sys

from sealkit.whitelist.cli import main

if __name__ == "__main__":
    sys.exit(main())
