import sys

from mcp_hub.cli import main

sys.exit(main())
