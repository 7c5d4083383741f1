#!/usr/bin/env python3
"""
Run the Statement Reconciliation API server.

Usage:
    python run_server.py [--host HOST] [--port PORT] [--reload]

Settings (DATABASE_URL, MATCH_* rules, LOG_LEVEL) come from the environment
or a .env file in the working directory. Interactive docs are served at /docs.
"""
import argparse
import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Serve the reconciliation API with uvicorn")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes")
    args = parser.parse_args()

    print(f"Statement Reconciliation API on http://{args.host}:{args.port} (docs at /docs)")

    # create_app builds the service from the environment on each (re)load
    uvicorn.run(
        "kodi_recon.api:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
