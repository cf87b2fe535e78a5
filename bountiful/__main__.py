import sys

from bountiful.cli import main

sys.exit(main())
