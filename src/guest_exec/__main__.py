"""Allow ``python -m guest_exec``."""

from guest_exec.cli import main

main()
