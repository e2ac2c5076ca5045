"""Module entry-point: ``python -m photomosaic``.

Without arguments this prints the version and exits successfully instead of
an argparse usage error.
"""

from __future__ import annotations

import sys

from photomosaic.cli import main


def _run() -> int:
    if len(sys.argv) == 1:
        sys.argv.append("version")
    return main()


if __name__ == "__main__":
    sys.exit(_run())
