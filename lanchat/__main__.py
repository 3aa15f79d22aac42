"""Allow ``python -m lanchat``."""

from lanchat.cli.commands import main

if __name__ == "__main__":
    raise SystemExit(main())
