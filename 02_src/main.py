"""Main entry point for the Chat Sync admin API."""

import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv


def main():
    """Run the application."""
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")

    # Imported after .env is loaded so settings see it
    from chatsync.api import create_fastapi_app
    from chatsync.logging_config import setup_logging

    # Get configuration from environment
    api_host = os.getenv("API_HOST", "localhost")
    api_port = int(os.getenv("API_PORT", "8000"))
    setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

    # Create FastAPI app
    app = create_fastapi_app()

    # Run with uvicorn
    uvicorn.run(
        app,
        host=api_host,
        port=api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
