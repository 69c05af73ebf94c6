from __future__ import annotations

import argparse

import uvicorn

from consortium.apps.api.main import create_app
from consortium.core.config import get_settings


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the consortium hub API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    # create_app configures logging; keep uvicorn from installing its own config.
    uvicorn.run(
        create_app(),
        host=args.host,
        port=args.port,
        log_config=None,
        log_level=get_settings().log_level.lower(),
    )


if __name__ == "__main__":
    main()
