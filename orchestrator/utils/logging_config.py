import logging
import os

LOG_COLORS = {
    'DEBUG': '\033[96;1m',
    'INFO': '\033[97;1m',
    'WARNING': '\033[95;1m',
    'ERROR': '\033[91;1m',
    'CRITICAL': '\033[91;1m',
}
RESET = '\033[0m'


class ColorFormatter(logging.Formatter):
    def format(self, record):
        color = LOG_COLORS.get(record.levelname, '')
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{RESET}"
        record.msg = f"{color}{record.msg}{RESET}"
        return super().format(record)


def setup_logging(debug: bool = False):
    level = logging.DEBUG if debug else os.environ.get("ORCHESTRATOR_LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    formatter = ColorFormatter(
        fmt='[orchestrator] %(asctime)s %(levelname)s: %(message)s',
        datefmt='%H:%M:%S'
    )
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.handlers = []
    root.addHandler(handler)
    root.setLevel(level)
    # request logs from httpx are noise at INFO during polling
    logging.getLogger("httpx").setLevel(logging.WARNING)


def log_header(title):
    l = 30 - len(title) // 2
    logging.info(f"\n\n{'=' * l} {title} {'=' * l}")
