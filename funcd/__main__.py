import sys

from funcd.main import main

sys.exit(main())
