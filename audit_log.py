"""
Append-only error logs shared by the audit jobs.
Each job gets a short one-line-per-error log and a detailed log with full tracebacks.
"""

import os
import logging
import traceback
from datetime import datetime
from typing import Optional


class AuditLog:
    def __init__(self, name: str, short_path: str, detail_path: str):
        """
        Args:
            name: Job name, used to namespace the underlying loggers
            short_path: File receiving one line per recorded error
            detail_path: File receiving the message plus the full exception text
        """
        self.short_path = short_path
        self.detail_path = detail_path
        self.short_logger = self._file_logger(f"powerbi_audit.{name}.short", short_path)
        self.detail_logger = self._file_logger(f"powerbi_audit.{name}.detail", detail_path)
        self.error_count = 0

    @staticmethod
    def _file_logger(logger_name: str, path: str) -> logging.Logger:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        logger = logging.getLogger(logger_name)
        logger.setLevel(logging.INFO)
        logger.propagate = False

        # Re-opening the same job must not stack handlers
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        handler = logging.FileHandler(path, mode='a', encoding='utf-8')
        handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logger.addHandler(handler)
        return logger

    @classmethod
    def for_job(cls, job_name: str, log_dir: str) -> "AuditLog":
        return cls(
            job_name,
            os.path.join(log_dir, f"{job_name}_errors.log"),
            os.path.join(log_dir, f"{job_name}_errors_detail.log"),
        )

    def record(self, message: str, error: Optional[BaseException] = None, **context) -> None:
        """
        Record one error in both logs and echo it to the console.

        Args:
            message: Short human readable description
            error: Exception to write in full to the detailed log
            context: Identifiers (workspace id, dataset id, ...) prefixed to the message
        """
        self.error_count += 1
        prefix = ' '.join(f"{key}={value}" for key, value in context.items())
        line = f"{prefix} - {message}" if prefix else message
        if error is not None:
            line = f"{line}: {str(error).splitlines()[0] if str(error) else type(error).__name__}"

        self.short_logger.error(line)

        detail = f"{line}\n"
        if error is not None:
            detail += ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        self.detail_logger.error(detail)

        print(f"[{datetime.now().isoformat(timespec='seconds')}] ✗ {line}")

    def close(self) -> None:
        for logger in (self.short_logger, self.detail_logger):
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()
