import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Send every record, uvicorn's included, to one stderr handler."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, force=True)
