# pulltab/__main__.py
import sys

from .client import main

sys.exit(main())
