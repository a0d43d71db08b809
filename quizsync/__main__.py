"""Allow ``python -m quizsync``."""

from .cli import main

main()
