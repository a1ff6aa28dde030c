import sys

from canopy.cli.main import main

sys.exit(main())
