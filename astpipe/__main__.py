import sys

from astpipe.cli import main

sys.exit(main())
