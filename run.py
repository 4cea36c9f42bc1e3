"""Run floorplan3d from a source checkout without installing it."""

import sys
from pathlib import Path

# Add src to path so the floorplan3d package is importable
sys.path.insert(0, str(Path(__file__).parent / "src"))

from floorplan3d.__main__ import main

if __name__ == "__main__":
    sys.exit(main())
