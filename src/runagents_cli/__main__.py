"""Entrypoint for ``python -m runagents_cli``."""

from .cli import main


if __name__ == "__main__":
    main()
