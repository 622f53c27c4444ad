"""Entry point for ``python -m billing_engine``."""

import sys

from billing_engine.cli import main

if __name__ == "__main__":
    sys.exit(main())
