"""
Turf — run.py
Process entry point: seeds the district catalog and runs the periodic workers
until interrupted.
"""

import logging
import sys
import time
from pathlib import Path

# Ensure we can import turf packages
project_root = Path(__file__).parent.resolve()
sys.path.insert(0, str(project_root))

from ecosystem.loop import EcosystemLoop


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )
    loop = EcosystemLoop(journal_path=Path("sessions/journal.jsonl"))
    loop.regions.seed_from_catalog()
    loop.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logging.getLogger("run").info("Shutting down")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
