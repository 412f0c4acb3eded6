import sys

from number_blocker.cli import main

sys.exit(main())
