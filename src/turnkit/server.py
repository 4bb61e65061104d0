"""Local server entrypoint for the turnkit HTTP surface."""

from __future__ import annotations

import argparse


def run_server(*, host: str = "127.0.0.1", port: int = 8000, log_level: str = "info") -> int:
    """Serve `app.main:app`; runtime start/stop is handled by the app's lifecycle hooks."""
    import uvicorn

    uvicorn.run("app.main:app", host=host, port=port, log_level=log_level, reload=False)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the turnkit chat pipeline server.")
    parser.add_argument("--host", default="127.0.0.1", help="Local bind host.")
    parser.add_argument("--port", type=int, default=8000, help="Local bind port.")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug"],
        help="uvicorn log level.",
    )
    args = parser.parse_args(argv)
    return run_server(host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    raise SystemExit(main())
