"""Entry point for ``python -m natupnp``."""

from natupnp.cli import main

if __name__ == "__main__":
    main()
