import logging
import sys


def setup_logging(level: str = "INFO") -> None:
    """
    Configure the root logger.

    Called once from create_app(); repeated calls only adjust the level.
    """
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    logging.getLogger().setLevel(level.upper())
    # Silence noisy libraries
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
