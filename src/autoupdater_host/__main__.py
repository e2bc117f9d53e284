"""Entry point for ``python -m autoupdater_host``."""

import sys

from autoupdater_host.cli import main

if __name__ == "__main__":
    sys.exit(main())
