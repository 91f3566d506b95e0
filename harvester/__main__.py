import sys

from harvester.cli.cli_modular import main

sys.exit(main())
