import os, logging, sys

logger = logging.getLogger("ovs_exporter")

_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}

def _ensure_logger(level: int = logging.INFO):
    """Attach a basic StreamHandler if none present.

    Done lazily so importing the package does not override host
    application logging configuration (pytest, uvicorn). Only when a
    debug message is actually emitted (DEBUG_VERBOSE=1) or the exporter
    entry point asks for it do we attach a handler.
    """
    if logger.handlers:
        return
    logger.setLevel(level)
    h = logging.StreamHandler(stream=sys.stdout)
    fmt = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
    h.setFormatter(fmt)
    logger.addHandler(h)

def configure_logging(level_name: str = 'info') -> None:
    """Attach the exporter handler and apply a named level.

    Accepted names mirror the exporter's log level option:
    debug, info, warn, error.
    """
    try:
        level = _LEVELS[level_name.lower()]
    except KeyError:
        raise ValueError(f'invalid log level: {level_name}') from None
    _ensure_logger(level)
    logger.setLevel(level)

def dbg(msg: str):
    """Emit a debug info line when DEBUG_VERBOSE=1.

    Enable by exporting DEBUG_VERBOSE=1 before starting the exporter.
    The variable is read on every call so tests can toggle it with
    monkeypatch.setenv.
    """
    if os.environ.get('DEBUG_VERBOSE') == '1':
        _ensure_logger()
        logger.info('[debug] %s', msg)
