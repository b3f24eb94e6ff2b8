#!/usr/bin/env python3
"""
DualSub entry script.

    python main.py generate -i movie.mp4 -o out/
    python main.py regenerate -s out/movie.json -m proofread -b 3,4 -o out/

Equivalent to the ``dualsub`` console script installed by the package.
"""

import sys

if __name__ == "__main__":
    if sys.version_info < (3, 9):
        sys.stderr.write("DualSub requires Python 3.9 or later (asyncio.to_thread).\n")
        sys.exit(1)

    from dualsub.cli import main
    main()
