import sys
from pathlib import Path

# The modules live at the repository root rather than in an installed package.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
