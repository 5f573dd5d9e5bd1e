"""Script to launch the City Health chat server."""

from __future__ import annotations

import argparse
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run from a checkout)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from clinic_chat.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the City Health chat server.")
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "127.0.0.1"),
        help="Host to bind the server to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind the server to (default: 8000)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (default: $CLINIC_CHAT_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--mode",
        choices=("freeform", "script"),
        default=None,
        help="Override engine.mode from the config file",
    )
    args = parser.parse_args()

    if args.mode:
        os.environ["CLINIC_CHAT__ENGINE__MODE"] = args.mode

    app = create_app(args.config)

    # Sessions live in per-process memory, so a single worker is required.
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
