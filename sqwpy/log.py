import logging

DEFAULT_LOG_LEVEL = logging.INFO
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


def sampling_logger(name: str = "sqwpy") -> logging.Logger:
    """Return a logger below the ``sqwpy`` hierarchy.

    A stream handler with :data:`LOG_FORMAT` is attached to the package logger
    the first time this is called, unless the application already configured
    the root logger.

    Args:
        name (str): Logger name, usually ``__name__`` of the calling module.

    Returns:
        logging.Logger: The requested logger.
    """
    package = logging.getLogger("sqwpy")
    if not package.handlers and not logging.getLogger().handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package.addHandler(handler)
        package.setLevel(DEFAULT_LOG_LEVEL)
    return logging.getLogger(name)
