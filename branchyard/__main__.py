"""Allow ``python -m branchyard``."""

from branchyard.cli import cli

if __name__ == "__main__":
    cli()
