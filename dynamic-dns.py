#!/usr/bin/env python3

"""Run dynamic-dns from a source checkout without installing it.

Equivalent to the `dynamic-dns` console script; configuration comes from the
same environment variables (see `dynamic_dns.cli`).
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from dynamic_dns.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
