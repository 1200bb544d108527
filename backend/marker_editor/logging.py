"""
Logging for the marker editor.

Everything logs under the ``marker_editor`` namespace, so the host server's
own loggers are left alone.
"""

import logging
import sys

ROOT_LOGGER = 'marker_editor'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Statement-level chatter from the database driver
_NOISY_LOGGERS = ('aiosqlite',)


def setup_logging(level: str = "INFO") -> logging.Logger:
    """
    Attach a stdout handler to the marker editor's logger tree.

    Safe to call more than once, e.g. when the app is rebuilt in tests.

    :param level: Log level name, e.g. ``INFO`` or ``DEBUG``. Unknown names fall back to INFO.
    :type level: str
    :rtype: logging.Logger
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(getattr(h, '_marker_editor', False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._marker_editor = True
        root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root


def get_logger(name: str) -> logging.Logger:
    """
    Logger for one part of the editor, e.g. ``services.purges``.

    Dotted module paths that already start with the package name are used as is.
    """
    if name == ROOT_LOGGER or name.startswith(f'{ROOT_LOGGER}.'):
        return logging.getLogger(name)
    return logging.getLogger(f'{ROOT_LOGGER}.{name}')
