"""Main entry point when executing asynccaller as a package.

This allows running the package using python -m asynccaller.
"""

from asynccaller.main import cli_entry_point

if __name__ == "__main__":
    cli_entry_point()
