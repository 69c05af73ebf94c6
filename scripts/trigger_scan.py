from __future__ import annotations

import argparse
import asyncio
import json

from consortium.core.logging import configure_logging
from consortium.services.jobs import ScanJobPayload, run_expiry_job, run_scan_job


async def _run(institution_id: str | None, expire: bool) -> None:
    # Run in the foreground so operators see the result without a worker.
    configure_logging()
    result = await run_scan_job(ScanJobPayload(institution_id=institution_id, requested_by="cli"))
    print(json.dumps(result))
    if expire:
        expired = await run_expiry_job()
        print(f"expired_requests={len(expired)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a catalog scan now")
    parser.add_argument("--institution", default=None, help="Scan one institution instead of all")
    parser.add_argument("--expire", action="store_true", help="Also run the access expiry sweep")
    args = parser.parse_args()
    asyncio.run(_run(args.institution, args.expire))


if __name__ == "__main__":
    main()
