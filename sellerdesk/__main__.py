"""Main entry point when executing sellerdesk as a package.

This allows running the package using python -m sellerdesk.
"""

from sellerdesk.main import cli_entry_point

if __name__ == "__main__":
    cli_entry_point()
