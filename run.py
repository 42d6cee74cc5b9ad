"""
Run the QueueJoy backend with uvicorn.

Usage:
    python run.py
    python run.py --reload            # Development mode with auto-reload
    python run.py --port 8080 --workers 4
    python run.py --proxy-headers     # behind a TLS-terminating proxy
"""
import argparse
import uvicorn


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the QueueJoy API server")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Worker processes (default: 1, ignored with --reload; keep 1 when HOUSEKEEPING_ENABLED is set)",
    )
    parser.add_argument(
        "--proxy-headers",
        action="store_true",
        help="Trust X-Forwarded-* headers for the client address stored on start tokens",
    )
    return parser


def main():
    args = build_parser().parse_args()
    workers = 1 if args.reload else args.workers

    print("Starting QueueJoy API server...")
    print(f"  Host: {args.host}")
    print(f"  Port: {args.port}")
    print(f"  Reload: {args.reload}")
    if workers > 1:
        print(f"  Workers: {workers}")
    print()

    uvicorn.run(
        "queuejoy.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=workers,
        proxy_headers=args.proxy_headers,
        log_config=None,
    )


if __name__ == "__main__":
    main()
