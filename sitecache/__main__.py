"""Allow running as ``python -m sitecache``."""

from . import main

main()
