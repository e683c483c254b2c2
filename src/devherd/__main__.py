"""Allow ``python -m devherd``."""

import sys

from .cli import main

sys.exit(main())
