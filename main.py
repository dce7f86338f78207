# main.py
import structlog
import uvicorn

from api.app import create_app
from config import settings
from core.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def main() -> None:
    setup_logging(settings)
    app = create_app(settings)
    logger.info(
        f"Novel gateway listening on {settings.HOST}:{settings.PORT}",
        environment=settings.ENVIRONMENT,
        mode=settings.ORCHESTRATION_MODE,
    )
    try:
        uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)
    except KeyboardInterrupt:
        logger.info("Novel gateway shutting down gracefully due to KeyboardInterrupt...")
    except Exception as main_err:  # pragma: no cover - entry point catch
        logger.critical(f"Novel gateway encountered an unhandled exception: {main_err}", exc_info=True)
        raise


if __name__ == "__main__":
    main()
