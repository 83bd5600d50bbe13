"""Entry point for ``python -m goupdate``."""

from goupdate.main import run

if __name__ == "__main__":
    run()
