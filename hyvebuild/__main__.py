"""Allow ``python -m hyvebuild``."""

import sys

from hyvebuild import cli

sys.exit(cli.main())
