#!/usr/bin/env python3
"""Bootstrap an admin user; see ``jwtpizza.bootstrap`` for options."""
from __future__ import annotations

import sys

from jwtpizza.bootstrap import main

if __name__ == "__main__":
    sys.exit(main())
