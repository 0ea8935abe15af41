import dataclasses
import logging
import threading
from enum import Enum
from typing import Callable, Optional, TextIO

from applabels.services.heartbeat import PING_INTERVAL, HeartbeatService
from applabels.services.registry import ApplicationRegistry

LIST_ALL_COMMAND = 'list-all'
FIND_COMMAND_PREFIX = 'find:'
EXIT_COMMAND = 'exit'

LISTING_HEADER = 'listing'
PACKAGE_PREFIX = 'package:'
NOT_FOUND_PREFIX = 'error:not-found:'
UNKNOWN_COMMAND_PREFIX = 'error:unknown-command:'


class CommandType(Enum):
    LIST_ALL = 'list-all'
    FIND = 'find'
    EXIT = 'exit'
    UNKNOWN = 'unknown'


class SessionState(Enum):
    RUNNING = 'running'
    TERMINATING = 'terminating'


@dataclasses.dataclass(frozen=True)
class Command:
    type: CommandType
    raw: str
    argument: Optional[str] = None


def parse_command(line: str) -> Command:
    line = line.rstrip('\r\n')
    if line == LIST_ALL_COMMAND:
        return Command(CommandType.LIST_ALL, line)
    if line == EXIT_COMMAND:
        return Command(CommandType.EXIT, line)
    if line.startswith(FIND_COMMAND_PREFIX):
        return Command(CommandType.FIND, line, line[len(FIND_COMMAND_PREFIX):])
    return Command(CommandType.UNKNOWN, line)


class CommandLoop:
    """
    Answer newline-delimited commands read from `input` until `exit` or end of input
    """

    def __init__(self, registry: ApplicationRegistry, input: TextIO, output: TextIO, lock: threading.Lock,
                 on_terminate: Optional[Callable[[], None]] = None):
        """
        :param registry: where applications are looked up
        :param input: command stream
        :param output: response stream, shared with the heartbeat
        :param lock: guards every write to output
        :param on_terminate: called with the lock held when the loop stops running
        """
        self.logger = logging.getLogger(__name__)
        self.registry = registry
        self.input = input
        self.output = output
        self.lock = lock
        self.on_terminate = on_terminate
        self.state = SessionState.RUNNING
        self._handlers = {
            CommandType.LIST_ALL: self._handle_list_all,
            CommandType.FIND: self._handle_find,
            CommandType.EXIT: self._handle_exit,
            CommandType.UNKNOWN: self._handle_unknown,
        }

    def run(self) -> None:
        while self.state == SessionState.RUNNING:
            line = self.input.readline()
            if not line:
                self.logger.debug('end of input')
                self._terminate()
                break

            command = parse_command(line)
            self.logger.debug(f'handling {command}')
            self._handlers[command.type](command)

    def write_lines(self, lines: list[str]) -> None:
        """ write a whole response as one unit with respect to other writers """
        with self.lock:
            for line in lines:
                self.output.write(f'{line}\n')
            self.output.flush()

    def _terminate(self) -> None:
        with self.lock:
            self.state = SessionState.TERMINATING
            if self.on_terminate is not None:
                self.on_terminate()

    def _handle_list_all(self, command: Command) -> None:
        records = self.registry.list_applications()
        self.write_lines([LISTING_HEADER] + [record.to_line() for record in records] + [''])

    def _handle_find(self, command: Command) -> None:
        record = self.registry.find_application(command.argument)
        if record is None:
            self.write_lines([f'{NOT_FOUND_PREFIX}{command.argument}'])
        else:
            self.write_lines([f'{PACKAGE_PREFIX}{record.to_line()}'])

    def _handle_exit(self, command: Command) -> None:
        self._terminate()

    def _handle_unknown(self, command: Command) -> None:
        self.logger.debug(f'unknown command: {command.raw!r}')
        self.write_lines([f'{UNKNOWN_COMMAND_PREFIX}{command.raw}'])


class LabelServer:
    """
    A serve-mode session: the command loop in the foreground and the heartbeat in the background, both writing to
    the same output under one lock.
    """

    def __init__(self, registry: ApplicationRegistry, input: TextIO, output: TextIO,
                 ping_interval: float = PING_INTERVAL):
        self.lock = threading.Lock()
        self.heartbeat = HeartbeatService(output, self.lock, interval=ping_interval)
        self.command_loop = CommandLoop(registry, input, output, self.lock, on_terminate=self.heartbeat.stop)

    @property
    def state(self) -> SessionState:
        return self.command_loop.state

    def serve(self) -> None:
        self.heartbeat.start()
        try:
            self.command_loop.run()
        finally:
            self.heartbeat.stop()
            self.heartbeat.join()
