import sys

from hamtmap.cli import main

sys.exit(main())
