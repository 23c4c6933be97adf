"""
imgcache Main Entry Point
Provides command-line interface for the image cache
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from imgcache.cli import main


if __name__ == "__main__":
    sys.exit(main())
