"""Main entry point for ``python -m shunt``."""

from shunt.cli.main import main


if __name__ == "__main__":
    main()
