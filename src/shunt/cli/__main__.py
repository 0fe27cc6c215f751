"""CLI entry point."""

from shunt.cli.main import main


if __name__ == "__main__":
    main()
