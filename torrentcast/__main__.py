"""Allow running as ``python -m torrentcast``."""

import sys

from torrentcast.cli import main

sys.exit(main())
