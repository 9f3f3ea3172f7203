import json
import logging
import sys

from .oauth_config import LoggingConfig

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record),
            "logger": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, separators=(',', ':'))


def configure_logging(config: LoggingConfig) -> None:
    """Configure root and audit logging from LoggingConfig"""
    formatter: logging.Formatter
    if config.format == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    audit = logging.getLogger("security_audit")
    audit.disabled = not config.audit_logging_enabled
    if config.audit_log_file:
        file_handler = logging.FileHandler(config.audit_log_file)
        # audit entries are already JSON strings
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        audit.addHandler(file_handler)
