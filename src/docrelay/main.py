"""Server entry point: `docrelay` console script or `uvicorn docrelay.main:app`."""

import uvicorn

from docrelay.api import create_app

app = create_app()


def run() -> None:
    """Serve the app with uvicorn."""
    uvicorn.run("docrelay.main:app", host="0.0.0.0", port=8000, log_config=None)  # nosec B104
