"""Allow ``python -m cycleflow``."""

from cycleflow.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
