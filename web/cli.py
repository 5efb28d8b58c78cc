"""
CLI entry point for the Bedrock Dev web server.

Run:  python -m web [--port 8765] [--dir /path/to/project]
"""

import argparse
import logging
import os

import web.state as _state
from backend import LocalBackend
from config import app_config, get_credentials_info


def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="Bedrock Dev: task engine web server")
    parser.add_argument("--port", type=int, default=8765, help="Server port (default: 8765)")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--dir", default=app_config.working_directory, help="Working directory for the agent")
    parser.add_argument("--storage-dir", default=app_config.storage_directory,
                        help="Where task history and settings are stored")
    parser.add_argument("--log-level", default=app_config.log_level, help="Logging level (default: from LOG_LEVEL)")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    _state._working_directory = os.path.abspath(os.path.expanduser(args.dir))
    _state._storage_directory = os.path.abspath(os.path.expanduser(args.storage_dir))

    if not os.path.isdir(_state._working_directory):
        print(f"\n  Error: directory not found: {_state._working_directory}")
        print(f"  Hint: use the full path, e.g. --dir ~/Desktop/my-project\n")
        raise SystemExit(1)

    _state._backend = LocalBackend(_state._working_directory)
    print(f"\n  Bedrock Dev")
    print(f"  ws://{args.host}:{args.port}/ws")
    print(f"  Working directory: {_state._working_directory}")
    print(f"  {get_credentials_info()}")
    print()

    from web import app
    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")
