"""Run the reconciler CLI with ``python -m reconciler``."""

import sys

from reconciler.cli import main

sys.exit(main())
