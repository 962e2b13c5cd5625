"""
Run the filedrop upload service.
"""
import argparse
import uvicorn
from filedrop.config import config

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the filedrop upload service")
    parser.add_argument("--debug", action="store_true", help="Enable debug level logging")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind to")
    parser.add_argument(
        "--port",
        type=int,
        default=config.application_port,
        help="Port to listen on (defaults to APPLICATION_PORT)",
    )
    parser.add_argument("--reload", action="store_true", help="Restart on code changes, for development")
    args = parser.parse_args()

    uvicorn.run(
        "filedrop.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="debug" if args.debug else "info",
    )
