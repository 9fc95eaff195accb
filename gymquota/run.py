#!/usr/bin/env python
"""
Local runner for the gymquota service.

    python -m gymquota.run [--host 0.0.0.0] [--port 8000] [--reload]
"""
import argparse

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the gymquota API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true")
    args = parser.parse_args()

    print(f"\n[INFO] Starting gymquota on {args.host}:{args.port}...")
    uvicorn.run("gymquota.main:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
