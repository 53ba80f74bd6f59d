#!/usr/bin/env python3

"""Compatibility wrapper.

The project is packaged under `src/keenetic_geosite_sync`. This wrapper allows
running `./keenetic-geosite-sync.py` straight from a checkout or a router's
/opt directory without installing the package.

Note: This file intentionally tweaks sys.path before importing the package.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from keenetic_geosite_sync.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
