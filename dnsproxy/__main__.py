import sys

from dnsproxy.cli import main

sys.exit(main())
