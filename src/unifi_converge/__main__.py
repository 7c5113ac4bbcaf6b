"""Allow ``python -m unifi_converge``."""
import sys

from .cli import main

sys.exit(main())
