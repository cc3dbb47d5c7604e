"""
AnonChat - Allows running as: python -m anonchat
"""

import sys

from .main import main

if __name__ == "__main__":
    sys.exit(main())
