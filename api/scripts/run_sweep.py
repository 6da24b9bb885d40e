import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from spinmatch.scheduler import main


if __name__ == "__main__":
    main()
