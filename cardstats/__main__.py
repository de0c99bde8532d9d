"""Main entry point when executing cardstats as a package.

This allows running the package using python -m cardstats.
"""

from cardstats.main import cli_entry_point

if __name__ == "__main__":
    cli_entry_point()
