"""Standard library logging for the HTTP libraries in `--debug` mode.

veracity itself reports through `veracity._output`; this only makes the
request traces of `requests` and `urllib3` visible.

"""
import logging
import sys


def setup_logging(loggers, level, stream=None):
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(name)s %(levelname)s: %(message)s")
    )
    for name in loggers:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        logger.addHandler(handler)
    return handler
