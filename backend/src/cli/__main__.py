"""Entry point for running the bookmark CLI."""

from .main import main

if __name__ == "__main__":
    main()
