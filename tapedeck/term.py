"""Automation of a live terminal

This module drives a terminal server (ttyd) running the shell of the
recording. ttyd is spawned as a subprocess listening on a local port and
tapedeck connects to it through a websocket, speaking the protocol of ttyd's
web client:
    - keystrokes and terminal resizing are sent to the server
    - the output of the shell is received by a background thread and fed to a
    pyte screen which holds the current content of the terminal

`TerminalDriver` is a context manager: the connection and the subprocess are
always released when leaving the `with` block, whatever the reason.

The function `check_dependencies` verifies that the external programs
required for a recording are installed.
"""

import json
import logging
import os
import re
import shutil
import socket
import subprocess
import threading
import time

import pyte
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect

from tapedeck.render import CharacterCell, Renderer, ScreenSnapshot

logger = logging.getLogger(__name__)

TTYD_MIN_VERSION = (1, 7, 4)
VERSION_PATTERN = re.compile(r'(\d+)\.(\d+)\.(\d+)')

# Messages of the ttyd protocol, first byte of each websocket message
INPUT = b'0'
RESIZE_TERMINAL = b'1'
OUTPUT = b'0'

CONNECT_ATTEMPTS = 10
CONNECT_DELAY = 0.05
MAX_CONNECT_DELAY = 1.0
OPEN_TIMEOUT = 5
# Time to wait for the shell to print something after connecting
READY_TIMEOUT = 5
TERMINATE_TIMEOUT = 3


class DriverError(Exception):
    """The terminal server or the connection to it failed"""


class DependencyError(Exception):
    """An external program required for recording is missing or outdated"""


class _Screen(pyte.Screen):
    """pyte screen sending the answers to terminal queries (device
    attributes, cursor position...) back to the terminal"""
    def __init__(self, columns, lines, respond):
        super().__init__(columns, lines)
        self._respond = respond

    def write_process_input(self, data):
        self._respond(data)


def screen_snapshot(screen):
    """Return a ScreenSnapshot of a pyte screen

    Blank cells with default attributes are left out of the buffer."""
    buffer = {}
    for row in range(screen.lines):
        line = screen.buffer[row]
        cells = {}
        for column in line:
            if column >= screen.columns:
                continue
            cell = CharacterCell.from_pyte(line[column])
            if cell.text.strip() or cell.background_color != 'background' \
                    or cell.underscore or cell.strikethrough:
                cells[column] = cell
        if cells:
            buffer[row] = cells

    if screen.cursor.hidden:
        cursor = None
    else:
        cursor = (min(screen.cursor.x, screen.columns - 1),
                  min(screen.cursor.y, screen.lines - 1))
    return ScreenSnapshot(screen.columns, screen.lines, buffer, cursor,
                          tuple(screen.display))


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


class TerminalDriver:
    """Terminal server subprocess and its control connection

    All operations on the terminal are serialized: input, resizing and screen
    captures never run concurrently. Any failure of the server or of the
    connection raises DriverError, after which the driver cannot be used
    anymore.
    """
    def __init__(self, settings, env=None, ttyd='ttyd',
                 connect_attempts=CONNECT_ATTEMPTS, connect_delay=CONNECT_DELAY):
        self.settings = settings
        self.env = dict(env or {})
        self.ttyd = ttyd
        self.connect_attempts = connect_attempts
        self.connect_delay = connect_delay
        self.renderer = Renderer(settings)
        self.url = None

        self._lock = threading.RLock()
        self._ready = threading.Event()
        self._closing = False
        self._error = None
        self._process = None
        self._connection = None
        self._reader = None

        columns, rows = self.renderer.geometry
        self._screen = _Screen(columns, rows, self._respond)
        self._stream = pyte.ByteStream(self._screen)
        self._snapshot = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def start(self):
        """Spawn the terminal server and connect to it"""
        try:
            self._spawn()
            self._connect()
            columns, rows = self.renderer.geometry
            handshake = {'AuthToken': '', 'columns': columns, 'rows': rows}
            self._send_message(json.dumps(handshake).encode('utf-8'))
            self._reader = threading.Thread(target=self._read, name='tapedeck-terminal',
                                            daemon=True)
            self._reader.start()
            if not self._ready.wait(READY_TIMEOUT):
                logger.debug('No output from the shell after {}s'.format(READY_TIMEOUT))
            self._check()
        except BaseException:
            self.close()
            raise

    def _spawn(self):
        port = free_port()
        shell_args, shell_env = self.settings.shell_command()
        if shutil.which(shell_args[0]) is None:
            raise DriverError('{} is not installed'.format(shell_args[0]))
        args = [self.ttyd, '--port', str(port), '--interface', '127.0.0.1',
                '--once', '--writable'] + shell_args
        env = dict(os.environ)
        env.update(shell_env)
        env.update(self.env)
        env['TERM'] = 'xterm-256color'

        logger.debug('Starting terminal server: {}'.format(' '.join(args)))
        try:
            self._process = subprocess.Popen(args, env=env,
                                             stdin=subprocess.DEVNULL,
                                             stdout=subprocess.DEVNULL,
                                             stderr=subprocess.DEVNULL)
        except OSError as exc:
            raise DriverError('Cannot start {}: {}'.format(self.ttyd, exc)) from exc
        self.url = 'ws://127.0.0.1:{}/ws'.format(port)

    def _connect(self):
        delay = self.connect_delay
        for attempt in range(1, self.connect_attempts + 1):
            status = self._process.poll()
            if status is not None:
                raise DriverError('Terminal server exited with status {}'.format(status))
            try:
                self._connection = connect(self.url, subprotocols=['tty'],
                                           open_timeout=OPEN_TIMEOUT, max_size=None)
            except (OSError, WebSocketException) as exc:
                logger.debug('Connection attempt {} to {} failed: {}'
                             .format(attempt, self.url, exc))
                time.sleep(delay)
                delay = min(delay * 2, MAX_CONNECT_DELAY)
            else:
                logger.debug('Connected to {}'.format(self.url))
                return
        raise DriverError('Terminal server unreachable at {} after {} attempts'
                          .format(self.url, self.connect_attempts))

    def _read(self):
        """Feed the output of the terminal to the screen until the connection
        is closed"""
        try:
            for message in self._connection:
                if isinstance(message, str):
                    message = message.encode('utf-8')
                if message[:1] == OUTPUT:
                    with self._lock:
                        self._stream.feed(message[1:])
                    self._ready.set()
        except ConnectionClosed:
            pass
        except (OSError, WebSocketException) as exc:
            logger.debug('Terminal connection failed: {}'.format(exc))
        finally:
            if not self._closing:
                self._error = DriverError('Connection to the terminal closed unexpectedly')
            self._ready.set()

    def _check(self):
        if self._error is not None:
            raise self._error
        if self._connection is None:
            raise DriverError('Terminal is not running')

    def _send_message(self, message):
        try:
            self._connection.send(message)
        except (ConnectionClosed, OSError, WebSocketException) as exc:
            self._error = DriverError('Cannot send data to the terminal: {}'.format(exc))
            raise self._error from exc

    def _respond(self, data):
        # Called by the screen, with the lock held, while output is fed
        if self._connection is not None and self._error is None and not self._closing:
            try:
                self._send_message(INPUT + data.encode('utf-8'))
            except DriverError:
                logger.debug('Cannot answer terminal query {!r}'.format(data))

    def send(self, text):
        """Send keystrokes to the terminal"""
        with self._lock:
            self._check()
            self._send_message(INPUT + text.encode('utf-8'))

    def resize(self, columns, rows):
        with self._lock:
            self._check()
            self._screen.resize(lines=rows, columns=columns)
            self._snapshot = None
            size = json.dumps({'columns': columns, 'rows': rows})
            self._send_message(RESIZE_TERMINAL + size.encode('utf-8'))

    def apply_settings(self, settings):
        """Restyle the terminal, resizing it if the grid changed"""
        renderer = Renderer(settings)
        with self._lock:
            self._check()
            self.settings = settings
            self.renderer = renderer
            if renderer.geometry != (self._screen.columns, self._screen.lines):
                self.resize(*renderer.geometry)

    def snapshot(self):
        """Return the current content of the screen

        The same object is returned as long as the screen does not change."""
        with self._lock:
            self._check()
            screen = self._screen
            cursor = (screen.cursor.x, screen.cursor.y, screen.cursor.hidden)
            if self._snapshot is None or screen.dirty or self._snapshot[0] != cursor:
                self._snapshot = (cursor, screen_snapshot(screen))
                screen.dirty.clear()
            return self._snapshot[1]

    def current_line(self):
        """Return the text of the line of the cursor"""
        with self._lock:
            self._check()
            return self._screen.display[self._screen.cursor.y].rstrip()

    def screen_text(self):
        with self._lock:
            self._check()
            return '\n'.join(line.rstrip() for line in self._screen.display)

    def capture(self, elapsed=0.0):
        """Return a tuple made of the screen as a PNG image and the snapshot
        it was rendered from"""
        with self._lock:
            snapshot = self.snapshot()
            renderer = self.renderer
        return renderer.render(snapshot, elapsed), snapshot

    def close(self):
        """Close the connection, then terminate and reap the terminal server"""
        self._closing = True
        if self._connection is not None:
            try:
                self._connection.close()
            except (OSError, WebSocketException) as exc:
                logger.debug('Error while closing the terminal connection: {}'.format(exc))
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(TERMINATE_TIMEOUT)
        if self._process is not None:
            if self._process.poll() is None:
                self._process.terminate()
                try:
                    self._process.wait(TERMINATE_TIMEOUT)
                except subprocess.TimeoutExpired:
                    self._process.kill()
                    self._process.wait()
            logger.debug('Terminal server exited with status {}'
                         .format(self._process.returncode))
        if self._error is None:
            self._error = DriverError('Terminal is closed')


def program_version(program):
    """Return the version of a program as a tuple of integers or None"""
    try:
        result = subprocess.run([program, '--version'], stdout=subprocess.PIPE,
                                stderr=subprocess.STDOUT, timeout=10,
                                universal_newlines=True)
    except (OSError, subprocess.SubprocessError):
        return None
    match = VERSION_PATTERN.search(result.stdout)
    if match is None:
        return None
    return tuple(int(number) for number in match.groups())


def check_dependencies():
    """Raise DependencyError if ffmpeg or a recent enough ttyd is missing"""
    for program, url in (('ffmpeg', 'https://ffmpeg.org'),
                         ('ttyd', 'https://github.com/tsl0922/ttyd')):
        if shutil.which(program) is None:
            raise DependencyError('{} is not installed. Install it from: {}'
                                  .format(program, url))

    version = program_version('ttyd')
    if version is None or version < TTYD_MIN_VERSION:
        found = '.'.join(map(str, version)) if version else 'unknown'
        raise DependencyError('ttyd version ({}) is out of date, tapedeck requires {}'
                              .format(found, '.'.join(map(str, TTYD_MIN_VERSION))))
