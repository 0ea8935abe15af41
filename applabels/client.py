import logging
import subprocess
import sys
import threading
import time
from typing import Optional, TextIO

from applabels.exceptions import ClientError, InvalidResponseError, LabelTimeoutError
from applabels.services.heartbeat import PING_INTERVAL, PING_PREFIX
from applabels.services.label_server import EXIT_COMMAND, FIND_COMMAND_PREFIX, LIST_ALL_COMMAND, LISTING_HEADER, \
    NOT_FOUND_PREFIX, PACKAGE_PREFIX

DEFAULT_COMMAND = [sys.executable, '-m', 'applabels', '--serve']
DEFAULT_TIMEOUT = 6
EXIT_TIMEOUT = 5
# a healthy session writes at least one ping per interval
STALE_TIMEOUT = 2 * PING_INTERVAL


class LabelClient:
    """
    Talk to an `applabels --serve` process and cache the labels it reports.

    The command can be anything that ends up running the server with its stdin/stdout attached, for example
    `['adb', 'shell', 'applabels', '--serve']`.

    A session that stays silent for `stale_timeout` seconds is considered dead: the process is killed, a new one is
    started and every unanswered request is sent again.
    """

    def __init__(self, command: Optional[list[str]] = None, stale_timeout: float = STALE_TIMEOUT):
        self.logger = logging.getLogger(__name__)
        self.command = command if command is not None else DEFAULT_COMMAND
        self.stale_timeout = stale_timeout
        self.process: Optional[subprocess.Popen] = None
        self.last_ping: Optional[int] = None
        self.last_ping_time: Optional[float] = None
        self.last_seen_time: Optional[float] = None
        self.restarts = 0
        self._labels: dict[str, str] = {}
        self._listings = 0
        self._in_flight: set[str] = set()
        self._listing_pending = False
        self._error: Optional[ClientError] = None
        self._finished = False
        self._session = 0
        self._condition = threading.Condition()
        self._write_lock = threading.Lock()
        self._restart_lock = threading.Lock()
        self._reader: Optional[threading.Thread] = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def labels(self) -> dict[str, str]:
        with self._condition:
            return dict(self._labels)

    def connect(self) -> None:
        self.logger.debug(f'starting {self.command}')
        process = subprocess.Popen(self.command, stdin=subprocess.PIPE, stdout=subprocess.PIPE, text=True,
                                   encoding='utf-8', bufsize=1)
        with self._condition:
            self.process = process
            self._error = None
            self._finished = False
            self._session += 1
            session = self._session
            self.last_seen_time = time.monotonic()
        self._reader = threading.Thread(target=self._read_responses, args=(process.stdout, session),
                                        name='label-client-reader', daemon=True)
        self._reader.start()

    def close(self) -> None:
        if self.process is None:
            return

        if self.process.poll() is None:
            try:
                self._send(EXIT_COMMAND)
            except ClientError:
                self.logger.debug('server exited before the exit command was sent')
        self._disconnect()

    def get(self, identifier: str, timeout: float = DEFAULT_TIMEOUT) -> str:
        """
        Get the label of a single application

        :param identifier: application identifier
        :param timeout: seconds to wait for the server to answer
        :return: the label, or the identifier itself when the server doesn't know it
        """
        with self._condition:
            label = self._labels.get(identifier)
            if label is None:
                self._in_flight.add(identifier)
        if label is not None:
            return label

        self._send(f'{FIND_COMMAND_PREFIX}{identifier}')
        self._wait(lambda: identifier in self._labels, timeout, identifier)
        with self._condition:
            return self._labels[identifier]

    def cache_all(self, timeout: float = DEFAULT_TIMEOUT) -> dict[str, str]:
        """ ask for a full listing and wait for it to land in the cache """
        with self._condition:
            expected = self._listings + 1
            self._listing_pending = True
        self._send(LIST_ALL_COMMAND)
        self._wait(lambda: self._listings >= expected, timeout)
        return self.labels

    def _wait(self, predicate, timeout: float, identifier: Optional[str] = None) -> None:
        deadline = time.monotonic() + timeout
        while True:
            with self._condition:
                stale_session = self._wait_in_session(predicate, deadline, identifier)
            if stale_session is None:
                return
            # restarting joins the reader, which needs the condition
            self._restart(stale_session)

    def _wait_in_session(self, predicate, deadline: float, identifier: Optional[str]) -> Optional[int]:
        """
        Wait for the predicate within the current session

        :return: None once the predicate holds, or the session number if the session went silent
        """
        # caller holds self._condition
        while not predicate():
            if self._error is not None:
                raise self._error
            if self._finished:
                raise ClientError('server exited before answering')
            now = time.monotonic()
            if now >= deadline:
                raise LabelTimeoutError(identifier)
            silence = now - self.last_seen_time
            if silence >= self.stale_timeout:
                return self._session
            self._condition.wait(min(deadline - now, self.stale_timeout - silence))
        return None

    def _restart(self, session: int) -> None:
        with self._restart_lock:
            with self._condition:
                if session != self._session:
                    # another waiter already replaced this session
                    return
                # the dying reader must not report the kill as the end of the session
                self._session += 1
            self.logger.warning(f'server was silent for {self.stale_timeout} seconds, restarting it')
            self.process.kill()
            self._disconnect()
            self.connect()
            self.restarts += 1

            with self._condition:
                pending = sorted(self._in_flight)
                listing_pending = self._listing_pending
            for identifier in pending:
                self._send(f'{FIND_COMMAND_PREFIX}{identifier}')
            if listing_pending:
                self._send(LIST_ALL_COMMAND)

    def _disconnect(self) -> None:
        try:
            self.process.stdin.close()
        except BrokenPipeError:
            # a failed write may leave data behind that can't be flushed anymore
            pass
        try:
            self.process.wait(EXIT_TIMEOUT)
        except subprocess.TimeoutExpired:
            self.logger.warning('server did not exit in time, killing it')
            self.process.kill()
            self.process.wait()
        self._reader.join()
        self.process.stdout.close()
        self.process = None

    def _send(self, line: str) -> None:
        if self.process is None:
            raise ClientError('not connected')
        with self._write_lock:
            try:
                self.process.stdin.write(f'{line}\n')
                self.process.stdin.flush()
            except (BrokenPipeError, ValueError) as e:
                raise ClientError('connection to the server was lost') from e

    def _read_responses(self, stdout: TextIO, session: int) -> None:
        try:
            while True:
                line = self._readline(stdout)
                if not line:
                    break
                self._handle_line(line.rstrip('\r\n'), stdout)
        except ClientError as e:
            self.logger.error(f'stopped reading responses: {e}')
            with self._condition:
                if session == self._session:
                    self._error = e
        finally:
            with self._condition:
                if session == self._session:
                    self._finished = True
                self._condition.notify_all()

    def _readline(self, stdout: TextIO) -> str:
        try:
            line = stdout.readline()
        except UnicodeDecodeError as e:
            raise InvalidResponseError(repr(e.object[e.start:e.end])) from e
        with self._condition:
            self.last_seen_time = time.monotonic()
        return line

    def _handle_line(self, line: str, stdout: TextIO) -> None:
        if line == LISTING_HEADER:
            self._read_listing(stdout)
        elif line.startswith(PACKAGE_PREFIX):
            parts = line.split(':', 2)
            if len(parts) != 3:
                raise InvalidResponseError(line)
            self._respond(parts[1], parts[2])
        elif line.startswith(PING_PREFIX):
            self._on_ping(line)
        elif line.startswith(NOT_FOUND_PREFIX):
            identifier = line[len(NOT_FOUND_PREFIX):]
            self._respond(identifier, identifier)
        else:
            raise InvalidResponseError(line)

    def _read_listing(self, stdout: TextIO) -> None:
        labels = {}
        while True:
            line = self._readline(stdout)
            if not line:
                raise InvalidResponseError(LISTING_HEADER)
            line = line.rstrip('\r\n')
            if not line:
                break
            identifier, separator, label = line.partition(':')
            if not separator:
                raise InvalidResponseError(line)
            labels[identifier] = label

        with self._condition:
            self._labels.update(labels)
            self._in_flight.difference_update(labels)
            self._listings += 1
            self._listing_pending = False
            self._condition.notify_all()

    def _respond(self, identifier: str, label: str) -> None:
        with self._condition:
            self._labels[identifier] = label
            self._in_flight.discard(identifier)
            self._condition.notify_all()

    def _on_ping(self, line: str) -> None:
        try:
            counter = int(line[len(PING_PREFIX):])
        except ValueError:
            raise InvalidResponseError(line) from None
        self.last_ping = counter
        self.last_ping_time = time.monotonic()
