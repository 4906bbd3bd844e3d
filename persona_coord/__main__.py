"""
Run the coordination service.

    python -m persona_coord --port 3000
    PERSONA_COORD_LOG_LEVEL=DEBUG python -m persona_coord
"""

import argparse
import logging
import os
from pathlib import Path

import uvicorn

from persona_coord.api.coordination_api import create_app
from persona_coord.config import CoordinationConfig


def main() -> None:
    config = CoordinationConfig.from_env()

    parser = argparse.ArgumentParser(description="Persona coordination service")
    parser.add_argument("--host", default=config.api_host, help="Interface to bind")
    parser.add_argument("--port", type=int, default=config.api_port, help="Port to run the server on")
    parser.add_argument("--home", type=Path, default=None, help="Base directory for locks and versions")
    parser.add_argument(
        "--no-self-register",
        action="store_true",
        help="Do not register this process in its own service registry",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("PERSONA_COORD_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config.api_host = args.host
    config.api_port = args.port
    if args.home is not None:
        config.base_dir = args.home.expanduser()

    app = create_app(config=config, self_register=not args.no_self_register)
    uvicorn.run(app, host=config.api_host, port=config.api_port, log_level="info", loop="asyncio")


if __name__ == "__main__":
    main()
