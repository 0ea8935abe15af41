import logging
import threading
from typing import Optional, TextIO

PING_INTERVAL = 3
PING_PREFIX = 'ping:'


class HeartbeatService:
    """
    Periodically write `ping:<n>` lines so the remote side can tell the session is alive
    """

    def __init__(self, output: TextIO, lock: threading.Lock, interval: float = PING_INTERVAL):
        """
        :param output: stream shared with the command loop
        :param lock: guards every write to output
        :param interval: seconds between two pings
        """
        self.logger = logging.getLogger(__name__)
        self.output = output
        self.lock = lock
        self.interval = interval
        self.counter = 0
        self.stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name='heartbeat', daemon=True)
        self._thread.start()

    def run(self) -> None:
        # Event.wait() returns early with True once stop() was requested
        while not self.stopped.wait(self.interval):
            with self.lock:
                if self.stopped.is_set():
                    break
                self.output.write(f'{PING_PREFIX}{self.counter}\n')
                self.output.flush()
            self.logger.debug(f'sent {PING_PREFIX}{self.counter}')
            self.counter += 1

    def stop(self) -> None:
        """ request the loop to exit; callers holding the output lock are guaranteed no further ping """
        self.stopped.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        self.join()
