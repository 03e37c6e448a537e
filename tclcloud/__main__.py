import sys

from tclcloud.cli import main

sys.exit(main())
