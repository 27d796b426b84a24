import logging

# chatty at INFO/DEBUG: pdfminer logs every parsed object, httpx every request
NOISY_LOGGERS = ("pdfminer", "httpx", "httpcore", "PIL")


def configure_logging(level="INFO"):
    """Set up root logging for the CLIs, worker and server; returns the package logger."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logger = logging.getLogger("pagecache")
    logger.setLevel(level)
    return logger
