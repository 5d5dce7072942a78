import logging
import time
from typing import Dict
from config import config

def setup_logging():
    """
    Configure logging level based on debug mode setting.
    Non-debug mode uses WARNING level to minimize console output.
    Debug modes use INFO level for detailed operation tracking.
    Safe to call again after the command line has changed the mode.
    """
    if config.debug_mode == "non_debug":
        level = logging.WARNING
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    project_logger = logging.getLogger("rehab_pose")
    project_logger.setLevel(level)
    return project_logger


class RateLimitedLogger:
    """
    Wraps a logger so that a warning with a given key is emitted at most
    once per interval. Used for conditions that persist across every frame.
    """

    def __init__(self, target: logging.Logger, interval: float = 5.0, clock=time.monotonic):
        self.target = target
        self.interval = interval
        self.clock = clock
        self._last_emitted: Dict[str, float] = {}

    def warning(self, key: str, msg: str) -> bool:
        """Log msg under key unless it was logged less than interval seconds ago"""
        now = self.clock()
        last = self._last_emitted.get(key)
        if last is not None and now - last < self.interval:
            return False
        self._last_emitted[key] = now
        self.target.warning(msg)
        return True

    def reset(self):
        self._last_emitted.clear()

# Global logger instance - import this in other modules
logger = setup_logging()
