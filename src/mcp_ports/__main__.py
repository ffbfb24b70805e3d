"""Allow running the registry CLI with ``python -m mcp_ports``."""

import sys

from mcp_ports.cli import main

if __name__ == "__main__":
    sys.exit(main())
