# audioflip/__main__.py
# `python -m audioflip` behaves like the installed `audioflip` console script.

from .cli import main

if __name__ == "__main__":
    import sys
    sys.exit(main())
