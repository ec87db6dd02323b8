"""
Entry point for running steward via `python -m steward`.

Opens the interactive menu unless a subcommand is given.
"""

from .cli import main

if __name__ == "__main__":
    main()
