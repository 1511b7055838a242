"""Allow ``python -m specflow``."""

from specflow.cli import main

main()
