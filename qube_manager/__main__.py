"""Allow ``python -m qube_manager``."""

import sys

from qube_manager.cli import main

if __name__ == "__main__":
    sys.exit(main())
