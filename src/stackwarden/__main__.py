"""Allow running as ``python -m stackwarden``."""

from stackwarden.cli.main import main

main()
