import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Attach a single stream handler to the ``meditrack`` logger tree.

    Safe to call more than once; later calls only adjust the level.
    """
    global _configured
    logger = logging.getLogger("meditrack")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if _configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    _configured = True
