"""Allow ``python -m wahook``."""

from wahook.cli import main

if __name__ == "__main__":
    main()
