"""
Start the approval engine API with uvicorn.

Usage:
    python run.py
    python run.py --reload              # Development mode with auto-reload
    python run.py --port 8080           # Custom port
    python run.py --no-scheduler        # API only; SLA timers run elsewhere

The SLA job queue runs inside the API process, so more than one worker
means more than one scheduler. Run extra workers with --no-scheduler.
"""
import argparse
import os

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Run the approval engine API server")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes")
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Worker processes (default: 1, ignored with --reload)"
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not start the SLA job queue in this process"
    )
    args = parser.parse_args()

    if args.no_scheduler:
        os.environ["SCHEDULER_ENABLED"] = "false"

    workers = 1 if args.reload else args.workers
    print(f"Starting approval engine on {args.host}:{args.port} "
          f"(reload={args.reload}, workers={workers}, scheduler={not args.no_scheduler})")

    uvicorn.run(
        "approval_engine.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=workers
    )


if __name__ == "__main__":
    main()
