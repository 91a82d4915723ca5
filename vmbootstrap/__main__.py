import sys

from vmbootstrap import cli

sys.exit(cli.main())
