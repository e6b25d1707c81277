#!/usr/bin/env python3
"""Manual smoke run: fetch metadata for package ids from every provider.

Usage: python scripts/fetch_metadata.py com.example.app org.fossify.gallery
"""

import sys
import time

from metafetch.core.fetch_queue import FetchState
from metafetch.core.logging import setup_logging
from metafetch.services.container import build_services


def main(package_ids: list[str]) -> None:
    setup_logging()
    services = build_services()
    services.start()

    for worker in services.workers.values():
        worker.enqueue_batch(package_ids)

    try:
        while any(w.completed_count() < len(package_ids) for w in services.workers.values()):
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nInterrupted")
    finally:
        services.stop()

    print("=" * 60)
    for name, worker in services.workers.items():
        print(f"\n{name}")
        for package_id in package_ids:
            status = worker.get_status(package_id)
            if status is None:
                print(f"  {package_id}: -")
            elif status.state == FetchState.SUCCESS:
                print(f"  ✓ {package_id}: {status.record.title} ({status.record.developer})")
            else:
                print(f"  ✗ {package_id}: {status.reason or status.state}")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    main(list(dict.fromkeys(sys.argv[1:])))
