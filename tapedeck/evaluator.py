"""Execution of tapes against a live terminal

An Evaluator runs one tape: it parses it, checks its requirements, starts a
terminal driver and executes the commands of the tape in order while a
capture loop records the screen of the terminal at a fixed interval. The
result is a Recording: the timed frames of the session together with the
final settings, handed to an encoder to produce the output files.

States of an evaluator:
    Idle -> Running -> Completed
                    -> Failed
                    -> Cancelled

Two threads are involved while running: the thread calling `evaluate`
executes commands and the capture loop thread records frames. Both share the
frame log and the terminal driver, which serialize access to themselves.

Time spent hidden between a Hide and a Show counts in the duration of the
recording, except when the tape starts with Hide: the commands up to the
first Show then run before the capture loop starts, since there is no
visible frame yet to hold on screen.
"""

import logging
import os
import re
import shutil
import threading
import time
from collections import namedtuple

from tapedeck import command
from tapedeck.config import STARTUP_OPTIONS, STYLE_OPTIONS, Settings
from tapedeck.encoder import write_atomically
from tapedeck.parser import Diagnostic, ParseError, TapeSyntaxError, format_error, parse_tape
from tapedeck.term import TerminalDriver

logger = logging.getLogger(__name__)

IDLE = 'Idle'
RUNNING = 'Running'
COMPLETED = 'Completed'
FAILED = 'Failed'
CANCELLED = 'Cancelled'

WAIT_POLL_INTERVAL = 0.01


class RequirementError(Exception):
    """A program required by the tape is not installed"""
    def __init__(self, require):
        self.program = require.program
        self.error = Diagnostic(require.line, require.column, len('Require'),
                                'Required program "{}" is not installed'.format(require.program))
        super().__init__(self.error.message)


class RecordingCancelled(Exception):
    pass


Frame = namedtuple('Frame', ['time', 'image', 'visible', 'screen'])
Frame.__doc__ = 'Capture of the terminal'
Frame.time.__doc__ = 'Time of the capture in seconds since the start of the recording'
Frame.image.__doc__ = 'PNG image of the terminal'
Frame.visible.__doc__ = 'False if the capture happened between Hide and Show'
Frame.screen.__doc__ = 'ScreenSnapshot the image was rendered from'

Recording = namedtuple('Recording', ['frames', 'settings', 'transcript', 'warnings',
                                     'duration'])
Recording.__doc__ = 'Result of the execution of a tape'
Recording.transcript.__doc__ = 'Text of the screen after each visible command'
Recording.warnings.__doc__ = 'Diagnostics of recoverable problems (Wait timeouts...)'


class FrameLog:
    """Append only list of frames shared by the capture loop and the command
    stream"""
    def __init__(self):
        self._frames = []
        self._lock = threading.Lock()

    def append(self, frame):
        with self._lock:
            self._frames.append(frame)

    def frames(self):
        with self._lock:
            return list(self._frames)

    def __len__(self):
        with self._lock:
            return len(self._frames)


class CaptureLoop(threading.Thread):
    """Thread calling `capture` every `interval` seconds

    Ticks are scheduled on absolute deadlines. When a capture takes longer
    than the interval, the ticks missed are skipped."""
    def __init__(self, capture, interval, clock=time.monotonic):
        super().__init__(name='tapedeck-capture', daemon=True)
        self.capture = capture
        self.interval = interval
        self.clock = clock
        self.error = None
        self._stop_event = threading.Event()

    def run(self):
        deadline = self.clock()
        try:
            while not self._stop_event.is_set():
                self.capture()
                deadline += self.interval
                now = self.clock()
                if now >= deadline:
                    missed = int((now - deadline) / self.interval) + 1
                    deadline += missed * self.interval
                self._stop_event.wait(deadline - now)
        except Exception as exc:
            logger.debug('Capture loop failed: {}'.format(exc))
            self.error = exc

    def stop(self):
        self._stop_event.set()
        if self.is_alive() and self is not threading.current_thread():
            self.join()


class Session:
    """State of the execution of the commands of a tape"""
    def __init__(self, settings, driver, cancel_event, base_dir='.', clock=time.monotonic,
                 tape=None):
        self.settings = settings
        self.tape = tape
        self.driver = driver
        self.cancel_event = cancel_event
        self.base_dir = base_dir
        self.clock = clock
        self.frames = FrameLog()
        self.visible = True
        self.clipboard = ''
        self.transcript = []
        self.warnings = []
        self.start_time = None
        self._capture_loop = None

    def elapsed(self):
        if self.start_time is None:
            return 0.0
        return self.clock() - self.start_time

    def capture_frame(self):
        visible = self.visible
        elapsed = self.elapsed()
        image, screen = self.driver.capture(elapsed)
        self.frames.append(Frame(elapsed, image, visible, screen))

    def start_capture(self):
        self.start_time = self.clock()
        self._capture_loop = CaptureLoop(self.capture_frame, 1 / self.settings.framerate,
                                         self.clock)
        self._capture_loop.start()

    def stop_capture(self):
        if self._capture_loop is not None:
            self._capture_loop.stop()

    def check(self):
        """Raise the error of the capture loop or RecordingCancelled"""
        if self.cancel_event.is_set():
            raise RecordingCancelled()
        if self._capture_loop is not None and self._capture_loop.error is not None:
            raise self._capture_loop.error

    def sleep(self, duration):
        if duration > 0 and self.cancel_event.wait(duration):
            raise RecordingCancelled()
        self.check()

    def warn(self, cmd, length, message):
        warning = Diagnostic(cmd.line, cmd.column, length, message)
        self.warnings.append(warning)
        if self.tape is not None:
            logger.warning(format_error(self.tape, warning).rstrip('\n'))
        else:
            logger.warning('Warning: {}'.format(warning))

    def execute(self, cmd):
        self.check()
        logger.info(command.describe(cmd))
        execute = getattr(self, '_execute_{}'.format(type(cmd).__name__.lower()))
        execute(cmd)
        self.check()
        if self.visible and not isinstance(cmd, command.CONFIGURATION_TYPES + (
                command.Hide, command.Show, command.Screenshot, command.Copy)):
            self.transcript.append(self.driver.screen_text())

    def type_text(self, text, speed):
        if speed == 0:
            self.driver.send(text)
            return
        for char in text:
            self.driver.send(char)
            self.sleep(speed)

    def _execute_type(self, cmd):
        speed = cmd.speed if cmd.speed is not None else self.settings.typing_speed
        self.type_text(cmd.text, speed)

    def _execute_key(self, cmd):
        sequence = command.key_sequence(cmd.key, cmd.modifiers)
        speed = cmd.speed if cmd.speed is not None else self.settings.typing_speed
        for _ in range(cmd.repeat):
            self.driver.send(sequence)
            self.sleep(speed)

    def _execute_sleep(self, cmd):
        self.sleep(cmd.duration)

    def _execute_wait(self, cmd):
        pattern = cmd.pattern if cmd.pattern is not None else self.settings.wait_pattern
        regex = re.compile(pattern)
        timeout = cmd.timeout if cmd.timeout is not None else self.settings.wait_timeout
        deadline = self.clock() + timeout
        while True:
            if cmd.scope == 'Screen':
                text = self.driver.screen_text()
            else:
                text = self.driver.current_line()
            if regex.search(text):
                return
            if self.clock() >= deadline:
                break
            self.sleep(WAIT_POLL_INTERVAL)

        last_line = text.rstrip().split('\n')[-1] if text.strip() else ''
        self.warn(cmd, len('Wait'), 'Timeout after {:g}s waiting for /{}/ on the {} '
                                    '(last line: "{}")'.format(timeout, pattern,
                                                              cmd.scope.lower(), last_line))

    def _execute_set(self, cmd):
        if cmd.option in STARTUP_OPTIONS:
            self.warn(cmd, len('Set'), '{} cannot be changed once the terminal is started'
                      .format(cmd.option))
            return
        self.settings = self.settings.set(cmd.option, cmd.value)
        if cmd.option in STYLE_OPTIONS:
            self.driver.apply_settings(self.settings)

    def _execute_hide(self, cmd):
        self.visible = False

    def _execute_show(self, cmd):
        self.visible = True

    def _execute_screenshot(self, cmd):
        image, _ = self.driver.capture(self.elapsed())
        path = os.path.join(self.base_dir, os.path.expanduser(cmd.path))
        write_atomically(path, image)
        logger.debug('Screenshot saved to {}'.format(path))

    def _execute_copy(self, cmd):
        self.clipboard = cmd.text

    def _execute_paste(self, cmd):
        self.type_text(self.clipboard, self.settings.typing_speed)

    def _execute_output(self, cmd):
        pass

    _execute_env = _execute_output
    _execute_require = _execute_output

    def recording(self):
        return Recording(frames=self.frames.frames(),
                         settings=self.settings,
                         transcript=list(self.transcript),
                         warnings=list(self.warnings),
                         duration=self.elapsed())


def configure(commands, settings=None):
    """Split the commands of a tape into the initial configuration of the
    session and the commands to execute

    Env commands and Set commands before the first action configure the
    session before the terminal starts. Output commands are collected from
    the whole tape.

    Return a tuple (settings, env, actions)"""
    settings = settings or Settings.defaults()
    env = {}
    actions = []
    for cmd in commands:
        if isinstance(cmd, command.Output):
            settings = settings.add_output(cmd.path, cmd.format)
        elif isinstance(cmd, command.Env):
            env[cmd.name] = cmd.value
        elif isinstance(cmd, command.Require):
            continue
        elif isinstance(cmd, command.Set) and not actions:
            settings = settings.set(cmd.option, cmd.value)
        else:
            actions.append(cmd)
    return settings, env, actions


class Evaluator:
    """Execute a tape and encode the resulting recording

    driver_factory: Callable returning a terminal driver context manager from
                    the initial settings and environment variables
    encoder: Object with an `encode(recording, cancel_event)` method, or None
    base_dir: Directory relative Screenshot paths are resolved against
    source_dir: Directory relative Source paths are resolved against, usually
                the directory of the tape file. Defaults to base_dir.
    """
    def __init__(self, driver_factory=TerminalDriver, encoder=None, base_dir='.',
                 which=shutil.which, clock=time.monotonic, source_dir=None):
        self.driver_factory = driver_factory
        self.encoder = encoder
        self.base_dir = base_dir
        self.source_dir = base_dir if source_dir is None else source_dir
        self.which = which
        self.clock = clock
        self.state = IDLE
        self._cancel_event = threading.Event()

    def cancel(self):
        """Stop the evaluation as soon as possible, from any thread"""
        self._cancel_event.set()

    @property
    def cancelled(self):
        return self._cancel_event.is_set()

    def load(self, tape):
        """Return the commands of a tape, raise TapeSyntaxError if it is invalid"""
        commands, errors = parse_tape(tape, self.source_dir)
        if not errors and not commands:
            errors = [ParseError(1, 1, 1, 'Tape has no commands')]
        if errors:
            raise TapeSyntaxError(errors, tape)
        return commands

    def check_requirements(self, commands):
        for cmd in commands:
            if isinstance(cmd, command.Require) and self.which(cmd.program) is None:
                raise RequirementError(cmd)

    def evaluate(self, tape):
        """Run a tape and return its Recording"""
        if self.state != IDLE:
            raise RuntimeError('Evaluator already used (state: {})'.format(self.state))
        try:
            if self.cancelled:
                raise RecordingCancelled()
            commands = self.load(tape)
            self.check_requirements(commands)
            recording = self._run(commands, tape)
            if self.encoder is not None:
                self.encoder.encode(recording, self._cancel_event)
            if self.cancelled:
                raise RecordingCancelled()
        except (RecordingCancelled, KeyboardInterrupt):
            self.state = CANCELLED
            raise
        except BaseException:
            self.state = FAILED
            raise
        self.state = COMPLETED
        return recording

    def _run(self, commands, tape=None):
        settings, env, actions = configure(commands)
        with self.driver_factory(settings, env) as driver:
            self.state = RUNNING
            session = Session(settings, driver, self._cancel_event, self.base_dir, self.clock,
                              tape)
            try:
                index = 0
                # Commands between a leading Hide and the next Show prepare the
                # terminal before the recording starts
                if actions and isinstance(actions[0], command.Hide):
                    while index < len(actions):
                        cmd = actions[index]
                        session.execute(cmd)
                        index += 1
                        if isinstance(cmd, command.Show):
                            break
                session.start_capture()
                for cmd in actions[index:]:
                    session.execute(cmd)
            finally:
                session.stop_capture()
            session.check()
            session.capture_frame()
            return session.recording()
