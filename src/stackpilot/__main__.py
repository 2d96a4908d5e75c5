"""Allow ``python -m stackpilot``."""

import sys

from stackpilot.cli import main

sys.exit(main())
