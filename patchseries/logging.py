import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Attach a stream handler to the `patchseries` logger.

    Propagation is disabled so records are not printed twice when the
    host application configures the root logger as well. Calling it again
    replaces the handler instead of adding a second one.
    """

    logger = logging.getLogger("patchseries")
    for handler in list(logger.handlers):
        if getattr(handler, "_patchseries", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._patchseries = True
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
