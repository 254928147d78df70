import sys

from scdiffstate.cli import main

sys.exit(main())
