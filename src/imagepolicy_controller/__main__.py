"""Run the controller with uvicorn: `python -m imagepolicy_controller`."""

import uvicorn

from imagepolicy_controller.settings import Settings


def main() -> None:
    """Serve the FastAPI app; the lifespan starts the controller runner."""
    settings = Settings()
    uvicorn.run(
        "imagepolicy_controller.main:app",
        host=settings.http_host,
        port=settings.http_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
