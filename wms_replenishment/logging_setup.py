import logging
import logging.handlers
from pathlib import Path
import traceback
from datetime import datetime

from wms_replenishment.config import config

class Logger:
    """Log manager for the replenishment engine.

    Hands out named loggers writing to ``<directory>/<name>.log`` and the
    console, records batch job boundaries and reports per-task failures.
    """

    _instance = None
    _loggers = {}

    def __new__(cls):
        """Singleton pattern implementation."""
        if cls._instance is None:
            cls._instance = super(Logger, cls).__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        settings = config.log_config
        self._level = getattr(logging, settings['level'].upper(), logging.INFO)
        self._formatter = logging.Formatter(settings['format'])
        self._log_dir = Path(settings['directory']) if settings['file_output'] else None
        self._console = settings['console_output']
        self._max_bytes = settings['max_size_mb'] * 1024 * 1024
        self._backup_count = settings['backup_count']

        if self._log_dir is not None:
            self._log_dir.mkdir(parents=True, exist_ok=True)

        self._app_logger = self.get_logger('app')
        self._initialized = True

    def _handlers(self, name):
        handlers = []
        if self._log_dir is not None:
            handlers.append(logging.handlers.RotatingFileHandler(
                self._log_dir / f"{name}.log",
                maxBytes=self._max_bytes,
                backupCount=self._backup_count
            ))
        if self._console:
            handlers.append(logging.StreamHandler())
        return handlers

    def get_logger(self, name):
        """Get a configured logger, creating its handlers on first use.

        Args:
            name: Logger name, also used as the log file name

        Returns:
            logging.Logger
        """
        if name in self._loggers:
            return self._loggers[name]

        log = logging.getLogger(name)
        log.setLevel(self._level)
        for handler in log.handlers[:]:
            log.removeHandler(handler)
        for handler in self._handlers(name):
            handler.setFormatter(self._formatter)
            log.addHandler(handler)
        log.propagate = False

        self._loggers[name] = log
        return log

    def log_exception(self, logger_name, exception, message=None):
        """Log a caught exception with its details and traceback.

        Must be called from inside the ``except`` block handling it.
        """
        log = self.get_logger(logger_name)
        text = f"{message}: {str(exception)}" if message else str(exception)

        details = getattr(exception, 'details', None)
        if details:
            text = f"{text} {details}"

        log.error(text)
        log.debug(traceback.format_exc())

    @property
    def app_logger(self):
        return self._app_logger

    def batch_start_log(self, process_name, additional_info=None):
        """Log the start of a batch job.

        Returns:
            Dictionary passed back to batch_end_log
        """
        log = self.get_logger('batch')
        log.info(f"Starting batch process: {process_name}")
        if additional_info:
            log.info(f"Process info: {additional_info}")

        return {
            'process_name': process_name,
            'start_time': datetime.now(),
            'additional_info': additional_info
        }

    def batch_end_log(self, log_info, success=True, result_info=None):
        """Log the end of a batch job and return its duration."""
        log = self.get_logger('batch')
        duration = datetime.now() - log_info['start_time']
        process_name = log_info['process_name']

        if success:
            log.info(f"Completed batch process: {process_name} in {duration}")
        else:
            log.error(f"Failed batch process: {process_name} after {duration}")

        if result_info:
            log.info(f"Process results: {result_info}")

        return duration

# Global logger instance
logger = Logger()

def get_logger(name):
    """Get a logger with the specified name."""
    return logger.get_logger(name)

def log_exception(logger_name, exception, message=None):
    """Log a caught exception with its details and traceback."""
    logger.log_exception(logger_name, exception, message)
