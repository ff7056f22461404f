"""Allow running as ``python -m xlplan``."""

from xlplan.cli import main

main()
