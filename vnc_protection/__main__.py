import sys

from vnc_protection.cli import main

sys.exit(main())
