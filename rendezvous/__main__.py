"""Entry point for running rendezvous as a module: python -m rendezvous"""

import sys

from rendezvous.cli import main

if __name__ == "__main__":
    sys.exit(main())
