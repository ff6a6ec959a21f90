import sys

from podrelay.cli import main

sys.exit(main())
