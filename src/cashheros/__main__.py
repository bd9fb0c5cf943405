"""Main entry point for the CashHeros edge service."""

import uvicorn

from cashheros.config import get_settings


def main() -> None:
    """Run the edge server."""
    settings = get_settings()

    uvicorn.run(
        "cashheros.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=False,  # The pipeline logs requests itself
        server_header=False,
    )


if __name__ == "__main__":
    main()
