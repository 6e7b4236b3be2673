"""
Loggers shared across the package.

Every module logs to its own logger under 'comfobridge'. Raw traffic is dumped
as hex to 'comfobridge.raw' at DEBUG. No handlers are installed and no levels
are set on import; applications configure logging as usual, and a Bridge applies
the verbosity of its settings.
"""
import logging

ROOT_LOGGER = 'comfobridge'
RAW_LOGGER = ROOT_LOGGER + '.raw'

raw_logger = logging.getLogger(RAW_LOGGER)


def apply_verbosity(verbose=False, debug=False):
    """
    :param verbose: when True, connection details are logged (DEBUG on the package logger),
        otherwise the package logger inherits the application's level.
    :param debug: when True, raw traffic is logged as hex, otherwise it is suppressed.
    """
    logging.getLogger(ROOT_LOGGER).setLevel(logging.DEBUG if verbose else logging.NOTSET)
    raw_logger.setLevel(logging.DEBUG if debug else logging.INFO)
