import sys

from aqhi_backend.cli import main

sys.exit(main())
