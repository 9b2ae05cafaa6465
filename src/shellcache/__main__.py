"""Allow `python -m shellcache` to invoke the CLI entry-point."""

from .cli import app


def main() -> None:
    app(prog_name="shellcache")


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
