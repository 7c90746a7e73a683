"""
Main entry point for running the agent server.
"""

import uvicorn
from config import settings


def main():
    """Start the agent server (the app starts its own job scheduler)."""
    uvicorn.run(
        "api.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    main()
