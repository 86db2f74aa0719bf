import sys

from .widget import main

sys.exit(main())
