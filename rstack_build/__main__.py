"""Entry point for ``python -m rstack_build``."""

from rstack_build.cli import app

if __name__ == "__main__":
    app()
