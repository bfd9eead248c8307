"""Entry point for `python -m chkit_cli` and `chkit` console script."""

from __future__ import annotations

from chkit_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
