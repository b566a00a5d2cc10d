import sys

from docstate.cli import main

sys.exit(main())
