import os
import tempfile
import threading
import time
import unittest
from unittest.mock import ANY, Mock

from tapedeck import command, evaluator
from tapedeck.config import Settings
from tapedeck.parser import TapeSyntaxError
from tapedeck.term import DriverError


class FakeDriver:
    """Terminal echoing what is typed after a prompt

    Captures return the text of the screen encoded in UTF-8 in place of a PNG
    image."""
    def __init__(self, settings, env=None):
        self.settings = settings
        self.env = env
        self.sent = []
        self.text = '> '
        self.entered = False
        self.closed = False
        self._lock = threading.Lock()

    def __enter__(self):
        self.entered = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.closed = True

    def send(self, text):
        with self._lock:
            self.sent.append(text)
            for char in text:
                self.text += '\n> ' if char == '\r' else char

    def current_line(self):
        with self._lock:
            return self.text.split('\n')[-1].rstrip()

    def screen_text(self):
        with self._lock:
            return self.text

    def capture(self, elapsed=0.0):
        with self._lock:
            return self.text.encode('utf-8'), self.text

    def apply_settings(self, settings):
        self.settings = settings


class BrokenDriver(FakeDriver):
    def send(self, text):
        raise DriverError('Connection to the terminal closed unexpectedly')


class BlindDriver(FakeDriver):
    def capture(self, elapsed=0.0):
        raise DriverError('Terminal is closed')


def which(program):
    return None if program == 'missing' else '/usr/bin/' + program


class TestEvaluator(unittest.TestCase):
    def setUp(self):
        self.drivers = []
        self.driver_class = FakeDriver
        self.directory = tempfile.TemporaryDirectory(prefix='tapedeck_')
        self.base_dir = self.directory.name

    def tearDown(self):
        self.directory.cleanup()

    def driver_factory(self, settings, env):
        driver = self.driver_class(settings, env)
        self.drivers.append(driver)
        return driver

    def evaluator(self, encoder=None):
        return evaluator.Evaluator(self.driver_factory, encoder, self.base_dir, which=which)

    def test_evaluate(self):
        tape = 'Set TypingSpeed 0\nType "echo hi"\nEnter\nSleep 100ms\n'
        tape_evaluator = self.evaluator()
        self.assertEqual(tape_evaluator.state, evaluator.IDLE)
        recording = tape_evaluator.evaluate(tape)

        self.assertEqual(tape_evaluator.state, evaluator.COMPLETED)
        driver = self.drivers[0]
        self.assertTrue(driver.closed)
        self.assertEqual(driver.sent, ['echo hi', '\r'])
        self.assertEqual(recording.settings.typing_speed, 0.0)
        self.assertEqual(recording.warnings, [])
        self.assertEqual(recording.transcript, ['> echo hi', '> echo hi\n> ', '> echo hi\n> '])
        self.assertGreaterEqual(recording.duration, 0.1)

        times = [frame.time for frame in recording.frames]
        self.assertGreater(len(times), 1)
        self.assertEqual(times, sorted(times))
        self.assertEqual(recording.frames[-1].image, b'> echo hi\n> ')
        self.assertTrue(all(frame.visible for frame in recording.frames))

    def test_frame_interval(self):
        # Frames keep their pace while slow commands block the command stream
        tape = 'Set Framerate 10\nType@150ms "abcd"\nWait@400ms /never/\n'
        with self.assertLogs('tapedeck.evaluator', level='WARNING'):
            recording = self.evaluator().evaluate(tape)

        # The last frame is captured once the commands are done
        times = [frame.time for frame in recording.frames[:-1]]
        self.assertGreaterEqual(len(times), 8)
        self.assertAlmostEqual(times[0], 0.0, delta=0.05)
        for previous, current in zip(times, times[1:]):
            with self.subTest(case=(previous, current)):
                self.assertAlmostEqual(current - previous, 0.1, delta=0.05)

    def test_source_dir(self):
        tapes_dir = os.path.join(self.base_dir, 'tapes')
        os.mkdir(tapes_dir)
        with open(os.path.join(tapes_dir, 'common.tape'), 'w') as tape_file:
            tape_file.write('Set TypingSpeed 0\n')
        tape_evaluator = evaluator.Evaluator(self.driver_factory, None, self.base_dir,
                                             which=which, source_dir=tapes_dir)
        recording = tape_evaluator.evaluate('Source common.tape\nType "x"\n'
                                            'Screenshot shot.png\n')
        self.assertEqual(recording.settings.typing_speed, 0.0)
        self.assertTrue(os.path.exists(os.path.join(self.base_dir, 'shot.png')))

        with self.assertRaises(TapeSyntaxError):
            self.evaluator().load('Source common.tape\n')

    def test_evaluate_twice(self):
        tape_evaluator = self.evaluator()
        tape_evaluator.evaluate('Sleep 10ms')
        with self.assertRaises(RuntimeError):
            tape_evaluator.evaluate('Sleep 10ms')

    def test_typing_speed(self):
        test_cases = [
            ('Type@10ms "abc"', ['a', 'b', 'c']),
            ('Set TypingSpeed 0\nType "abc"', ['abc']),
            ('Set TypingSpeed 0\nBackspace 3\nCtrl+C', ['\x7f', '\x7f', '\x7f', '\x03']),
            ('Set TypingSpeed 0\nCopy "copied"\nPaste', ['copied']),
            ('Set TypingSpeed 0\nPaste\nType "x"', ['', 'x']),
        ]
        for tape, sent in test_cases:
            with self.subTest(case=tape):
                self.drivers = []
                self.evaluator().evaluate(tape)
                self.assertEqual(self.drivers[0].sent, sent)

    def test_environment(self):
        self.evaluator().evaluate('Type@0ms "x"\nEnv NAME "value"\n')
        self.assertEqual(self.drivers[0].env, {'NAME': 'value'})

    def test_wait_matches(self):
        recording = self.evaluator().evaluate('Set TypingSpeed 0\nType "ready"\n'
                                              'Wait@1s /ready$/\n')
        self.assertEqual(recording.warnings, [])

    def test_wait_timeout_is_a_warning(self):
        tape = 'Set TypingSpeed 0\nWait@100ms /never/\nType "after"\n'
        tape_evaluator = self.evaluator()
        with self.assertLogs('tapedeck.evaluator', level='WARNING'):
            recording = tape_evaluator.evaluate(tape)

        self.assertEqual(tape_evaluator.state, evaluator.COMPLETED)
        self.assertEqual(self.drivers[0].sent, ['after'])
        self.assertEqual(len(recording.warnings), 1)
        warning = recording.warnings[0]
        self.assertEqual((warning.line, warning.column), (2, 1))
        self.assertEqual(warning.message,
                         'Timeout after 0.1s waiting for /never/ on the line (last line: ">")')

    def test_wait_uses_settings(self):
        tape = ('Set WaitTimeout 50ms\nSet WaitPattern "never"\nSleep 10ms\n'
                'Wait+Screen\n')
        with self.assertLogs('tapedeck.evaluator', level='WARNING'):
            recording = self.evaluator().evaluate(tape)
        self.assertEqual([w.message for w in recording.warnings],
                         ['Timeout after 0.05s waiting for /never/ on the screen '
                          '(last line: ">")'])

    def test_wait_timeout_statement_overrides_setting(self):
        tape = 'Set WaitTimeout 1m\nWait@50ms /never/\n'
        start = time.monotonic()
        with self.assertLogs('tapedeck.evaluator', level='WARNING'):
            recording = self.evaluator().evaluate(tape)
        self.assertLess(time.monotonic() - start, 30)
        self.assertIn('Timeout after 0.05s', recording.warnings[0].message)

    def test_hide_and_show(self):
        tape = ('Set TypingSpeed 0\nType "a"\nSleep 100ms\nHide\nType "b"\nSleep 100ms\n'
                'Show\nSleep 100ms\n')
        recording = self.evaluator().evaluate(tape)
        self.assertTrue(any(not frame.visible for frame in recording.frames))
        self.assertTrue(recording.frames[0].visible)
        self.assertTrue(recording.frames[-1].visible)
        self.assertEqual(recording.transcript, ['> a', '> a', '> ab'])

    def test_leading_hide_runs_before_capture(self):
        tape = 'Hide\nSet TypingSpeed 0\nType "clear"\nEnter\nShow\nType "x"\n'
        recording = self.evaluator().evaluate(tape)
        self.assertTrue(all(frame.visible for frame in recording.frames))
        self.assertTrue(recording.frames[0].image.startswith(b'> clear\n> '))
        self.assertEqual(recording.transcript, ['> clear\n> x'])

    def test_set_during_recording(self):
        tape = 'Type@0ms "a"\nSet FontSize 40\nSet Shell "zsh"\n'
        with self.assertLogs('tapedeck.evaluator', level='WARNING'):
            recording = self.evaluator().evaluate(tape)
        driver = self.drivers[0]
        self.assertEqual(driver.settings.font_size, 40)
        self.assertEqual(recording.settings.font_size, 40)
        self.assertEqual(recording.settings.shell, 'bash')
        self.assertEqual([w.message for w in recording.warnings],
                         ['Shell cannot be changed once the terminal is started'])

    def test_screenshot(self):
        self.evaluator().evaluate('Set TypingSpeed 0\nType "shot"\nScreenshot shots/shot.png\n')
        with open(os.path.join(self.base_dir, 'shots', 'shot.png'), 'rb') as screenshot:
            self.assertEqual(screenshot.read(), b'> shot')

    def test_missing_requirement(self):
        tape_evaluator = self.evaluator()
        with self.assertRaises(evaluator.RequirementError) as context:
            tape_evaluator.evaluate('Require git\nRequire missing\nType "x"\n')
        self.assertEqual(context.exception.program, 'missing')
        self.assertEqual((context.exception.error.line, context.exception.error.column), (2, 1))
        self.assertEqual(str(context.exception), 'Required program "missing" is not installed')
        self.assertEqual(tape_evaluator.state, evaluator.FAILED)
        self.assertEqual(self.drivers, [])

    def test_syntax_error(self):
        tape_evaluator = self.evaluator()
        with self.assertRaises(TapeSyntaxError) as context:
            tape_evaluator.evaluate('Type "ok"\nSleep soon\n')
        self.assertEqual([e.line for e in context.exception.errors], [2])
        self.assertEqual(tape_evaluator.state, evaluator.FAILED)
        self.assertEqual(self.drivers, [])

    def test_empty_tape(self):
        with self.assertRaises(TapeSyntaxError) as context:
            self.evaluator().evaluate('# nothing to see\n')
        self.assertEqual([e.message for e in context.exception.errors], ['Tape has no commands'])

    def test_driver_failure(self):
        self.driver_class = BrokenDriver
        tape_evaluator = self.evaluator()
        with self.assertRaises(DriverError):
            tape_evaluator.evaluate('Type "x"')
        self.assertEqual(tape_evaluator.state, evaluator.FAILED)
        self.assertTrue(self.drivers[0].closed)

    def test_capture_failure(self):
        self.driver_class = BlindDriver
        tape_evaluator = self.evaluator()
        with self.assertRaises(DriverError):
            tape_evaluator.evaluate('Sleep 200ms')
        self.assertEqual(tape_evaluator.state, evaluator.FAILED)
        self.assertTrue(self.drivers[0].closed)

    def test_cancel(self):
        tape_evaluator = self.evaluator()
        timer = threading.Timer(0.1, tape_evaluator.cancel)
        timer.start()
        self.addCleanup(timer.cancel)
        start = time.monotonic()
        with self.assertRaises(evaluator.RecordingCancelled):
            tape_evaluator.evaluate('Sleep 1m\n')
        self.assertLess(time.monotonic() - start, 30)
        self.assertEqual(tape_evaluator.state, evaluator.CANCELLED)
        self.assertTrue(self.drivers[0].closed)

    def test_cancel_before_start(self):
        tape_evaluator = self.evaluator()
        tape_evaluator.cancel()
        with self.assertRaises(evaluator.RecordingCancelled):
            tape_evaluator.evaluate('Sleep 1s\n')
        self.assertEqual(tape_evaluator.state, evaluator.CANCELLED)
        self.assertEqual(self.drivers, [])

    def test_encoder(self):
        encoder = Mock()
        recording = self.evaluator(encoder).evaluate('Output demo.gif\nSleep 10ms\n')
        encoder.encode.assert_called_once_with(recording, ANY)
        self.assertEqual(recording.settings.outputs, (('demo.gif', 'gif'),))

    def test_cancel_while_encoding(self):
        encoder = Mock()
        tape_evaluator = self.evaluator(encoder)
        encoder.encode.side_effect = lambda recording, cancel_event: tape_evaluator.cancel()
        with self.assertRaises(evaluator.RecordingCancelled):
            tape_evaluator.evaluate('Sleep 10ms\n')
        self.assertEqual(tape_evaluator.state, evaluator.CANCELLED)


class TestConfigure(unittest.TestCase):
    def test_configure(self):
        commands = [
            command.Output('a.gif', 'gif', 1, 1),
            command.Set('FontSize', 40, 2, 1),
            command.Require('git', 3, 1),
            command.Type('x', None, 4, 1),
            command.Set('Width', 300, 5, 1),
            command.Env('NAME', 'value', 6, 1),
            command.Output('a.txt', 'txt', 7, 1),
        ]
        settings, env, actions = evaluator.configure(commands)
        defaults = Settings.defaults()
        self.assertEqual(settings.font_size, 40)
        self.assertEqual(settings.width, defaults.width)
        self.assertEqual(settings.outputs, (('a.gif', 'gif'), ('a.txt', 'txt')))
        self.assertEqual(env, {'NAME': 'value'})
        self.assertEqual(actions, [commands[3], commands[4]])

    def test_configure_with_settings(self):
        base = Settings.defaults().set('Framerate', 10)
        settings, _, actions = evaluator.configure([], base)
        self.assertEqual(settings, base)
        self.assertEqual(actions, [])


class TestCaptureLoop(unittest.TestCase):
    def test_missed_ticks_are_skipped(self):
        times = iter([0.0, 0.35, 0.42])
        captures = []
        loop = evaluator.CaptureLoop(lambda: captures.append(None), 0.1,
                                     clock=lambda: next(times))
        loop._stop_event = Mock()
        loop._stop_event.is_set.side_effect = [False, False, True]
        loop.run()

        self.assertEqual(len(captures), 2)
        timeouts = [call[0][0] for call in loop._stop_event.wait.call_args_list]
        self.assertEqual(len(timeouts), 2)
        self.assertAlmostEqual(timeouts[0], 0.05)
        self.assertAlmostEqual(timeouts[1], 0.08)

    def test_error_is_kept(self):
        def capture():
            raise DriverError('Terminal is closed')
        loop = evaluator.CaptureLoop(capture, 0.1)
        loop.start()
        loop.join(5)
        self.assertIsInstance(loop.error, DriverError)
        loop.stop()

    def test_stop(self):
        loop = evaluator.CaptureLoop(lambda: None, 0.01)
        loop.start()
        loop.stop()
        self.assertFalse(loop.is_alive())
