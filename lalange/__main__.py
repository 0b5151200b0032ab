"""Allow `python -m lalange`."""

from .cli import main

main()
