import logging
from time import time

logger = logging.getLogger(__name__)


class Timer:
    """
    Logs the time that a block of code takes to run, at the given log level.
    The elapsed time in seconds is kept as ``runtime`` once the block exits.
    """

    def __init__(self, message: str, level: int = logging.INFO):
        self.message = message
        self.level = level
        self.start = None
        self.runtime = None

    def __enter__(self):
        self.start = time()
        msg = self.message[0].upper() + self.message[1:]
        logger.log(self.level, f"{msg}...")
        return self

    def __exit__(self, *args):
        self.runtime = time() - self.start
        msg = self.message[0].lower() + self.message[1:]
        logger.log(self.level, f"Finished {msg} in {self.runtime:0.1f} seconds.")
