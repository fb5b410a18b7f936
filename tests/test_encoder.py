import os
import subprocess
import tempfile
import threading
import unittest
from unittest.mock import patch

from tapedeck import encoder
from tapedeck.config import Settings
from tapedeck.evaluator import Frame, Recording


def make_recording(frames, outputs=(), transcript=(), **settings):
    settings = Settings.defaults()._replace(outputs=tuple(outputs), framerate=10, **settings)
    duration = frames[-1].time if frames else 0.0
    return Recording(frames, settings, list(transcript), [], duration)


FRAMES = [
    Frame(0.0, b'A', True, None),
    Frame(0.05, b'B', True, None),
    Frame(0.1, b'C', False, None),
    Frame(0.2, b'D', True, None),
]


class FakeProcess:
    def __init__(self, returncode=0, finishes=True):
        self.returncode = returncode
        self.finishes = finishes
        self.killed = False

    def wait(self, timeout=None):
        if not self.finishes and not self.killed:
            raise subprocess.TimeoutExpired('ffmpeg', timeout)
        return self.returncode

    def kill(self):
        self.killed = True


class FakeFFmpeg:
    """Replacement for subprocess.Popen recording the frames given to ffmpeg"""
    def __init__(self, process=None, stderr=b''):
        self.process = process or FakeProcess()
        self.stderr = stderr
        self.calls = []
        self.frame_files = []

    def __call__(self, args, **kwargs):
        self.calls.append(args)
        frame_dir = os.path.dirname(args[args.index('-i') + 1])
        self.frame_files.append(sorted(os.listdir(frame_dir)))
        with open(args[-1], 'wb') as output_file:
            output_file.write(b'video')
        kwargs['stderr'].write(self.stderr)
        return self.process


class TestTimeline(unittest.TestCase):
    def test_resample(self):
        self.assertEqual(encoder.resample(FRAMES, 10), [b'A', b'B', b'D'])
        self.assertEqual(encoder.resample(FRAMES, 20), [b'A', b'B', b'B', b'B', b'D'])

    def test_resample_drops_leading_hidden_frames(self):
        frames = [
            Frame(0.0, b'X', False, None),
            Frame(0.1, b'A', True, None),
            Frame(0.3, b'B', True, None),
        ]
        self.assertEqual(encoder.resample(frames, 10), [b'A', b'A', b'B'])

    def test_resample_without_visible_frame(self):
        self.assertEqual(encoder.resample([], 10), [])
        self.assertEqual(encoder.resample([Frame(0.0, b'X', False, None)], 10), [])

    def test_rotate(self):
        slots = list(range(10))
        test_cases = [
            (0, slots),
            (20, [2, 3, 4, 5, 6, 7, 8, 9, 0, 1]),
            (25, [3, 4, 5, 6, 7, 8, 9, 0, 1, 2]),
            (100, slots),
        ]
        for loop_offset, expected in test_cases:
            with self.subTest(case=loop_offset):
                self.assertEqual(encoder.rotate(slots, loop_offset), expected)
        self.assertEqual(encoder.rotate([], 50), [])

    def test_transcript_text(self):
        self.assertEqual(encoder.transcript_text(['> a', '> a\nb']),
                         '> a\n{0}\n> a\nb\n{0}\n'.format(encoder.TRANSCRIPT_RULE))
        self.assertEqual(encoder.transcript_text([]), '')


class TestFFmpegArguments(unittest.TestCase):
    def test_gif(self):
        settings = Settings.defaults()._replace(width=801, height=401, framerate=25,
                                                playback_speed=2.0)
        args = encoder.ffmpeg_arguments('ffmpeg', 'frames/%06d.png', 'out.gif', 'gif', settings)
        self.assertEqual(args[:3], ['ffmpeg', '-y', '-loglevel'])
        self.assertEqual(args[args.index('-framerate') + 1], '25')
        self.assertEqual(args[args.index('-i') + 1], 'frames/%06d.png')
        filters = args[args.index('-filter_complex') + 1]
        self.assertIn('setpts=PTS/2,scale=801:401:flags=lanczos', filters)
        self.assertIn('palettegen', filters)
        self.assertIn('paletteuse', filters)
        self.assertEqual(args[-5:], ['-loop', '0', '-f', 'gif', 'out.gif'])

    def test_video(self):
        settings = Settings.defaults()._replace(width=801, height=401, playback_speed=0.5)
        for output_format, codec in (('mp4', 'libx264'), ('webm', 'libvpx-vp9')):
            with self.subTest(case=output_format):
                args = encoder.ffmpeg_arguments('ffmpeg', 'f.png', 'out', output_format,
                                                settings)
                self.assertEqual(args[args.index('-vf') + 1],
                                 'setpts=PTS/0.5,scale=800:400:flags=lanczos')
                self.assertEqual(args[args.index('-c:v') + 1], codec)
                self.assertEqual(args[args.index('-pix_fmt') + 1], 'yuv420p')
                self.assertEqual(args[-3:], ['-f', output_format, 'out'])


class TestAtomicPath(unittest.TestCase):
    def setUp(self):
        self.directory = tempfile.TemporaryDirectory(prefix='tapedeck_')
        self.base_dir = self.directory.name

    def tearDown(self):
        self.directory.cleanup()

    def test_write_atomically(self):
        path = os.path.join(self.base_dir, 'sub', 'file.txt')
        encoder.write_atomically(path, b'first')
        encoder.write_atomically(path, b'second')
        with open(path, 'rb') as written:
            self.assertEqual(written.read(), b'second')
        self.assertEqual(os.listdir(os.path.dirname(path)), ['file.txt'])

    def test_failure_leaves_nothing(self):
        path = os.path.join(self.base_dir, 'file.txt')
        with self.assertRaises(RuntimeError):
            with encoder.atomic_path(path) as temp_path:
                with open(temp_path, 'wb') as temp_file:
                    temp_file.write(b'partial')
                raise RuntimeError('interrupted')
        self.assertEqual(os.listdir(self.base_dir), [])

    def test_directory_is_replaced(self):
        path = os.path.join(self.base_dir, 'frames')
        os.mkdir(path)
        with open(os.path.join(path, 'old.png'), 'wb'):
            pass
        with encoder.atomic_path(path, directory=True) as temp_dir:
            with open(os.path.join(temp_dir, 'new.png'), 'wb'):
                pass
        self.assertEqual(os.listdir(path), ['new.png'])
        self.assertEqual(os.listdir(self.base_dir), ['frames'])


class TestEncoder(unittest.TestCase):
    def setUp(self):
        self.directory = tempfile.TemporaryDirectory(prefix='tapedeck_')
        self.base_dir = self.directory.name
        self.encoder = encoder.Encoder(base_dir=self.base_dir)

    def tearDown(self):
        self.directory.cleanup()

    def read(self, name):
        with open(os.path.join(self.base_dir, name), 'rb') as output_file:
            return output_file.read()

    def test_no_output(self):
        with self.assertLogs('tapedeck.encoder', level='INFO'):
            self.assertEqual(self.encoder.encode(make_recording(FRAMES)), [])

    def test_transcript(self):
        recording = make_recording(FRAMES, [('out.txt', 'txt')], ['> ls', '> ls\nfile'])
        written = self.encoder.encode(recording)
        self.assertEqual(written, [os.path.join(self.base_dir, 'out.txt')])
        self.assertEqual(self.read('out.txt').decode('utf-8'),
                         encoder.transcript_text(['> ls', '> ls\nfile']))

    def test_frames_directory(self):
        recording = make_recording(FRAMES, [('frames/', 'frames')])
        self.encoder.encode(recording)
        frame_dir = os.path.join(self.base_dir, 'frames')
        self.assertEqual(sorted(os.listdir(frame_dir)),
                         [encoder.FRAME_FILENAME.format(i) for i in range(4)])
        self.assertEqual(self.read(os.path.join('frames', 'frame_000002.png')), b'C')

    def test_svg(self):
        recording = make_recording(FRAMES, [('out.svg', 'svg')])
        with patch('tapedeck.encoder.anim.render_animation', return_value=b'<svg/>') as render:
            self.encoder.encode(recording)
        render.assert_called_once_with(recording)
        self.assertEqual(self.read('out.svg'), b'<svg/>')

    def test_video(self):
        recording = make_recording(FRAMES, [('out.gif', 'gif'), ('out.mp4', 'mp4')],
                                   loop_offset=50.0)
        ffmpeg = FakeFFmpeg()
        with patch('tapedeck.encoder.subprocess.Popen', side_effect=ffmpeg):
            written = self.encoder.encode(recording)

        self.assertEqual(written, [os.path.join(self.base_dir, 'out.gif'),
                                   os.path.join(self.base_dir, 'out.mp4')])
        self.assertEqual(sorted(os.listdir(self.base_dir)), ['out.gif', 'out.mp4'])
        self.assertEqual(self.read('out.gif'), b'video')
        self.assertEqual([args[args.index('-f') + 1] for args in ffmpeg.calls], ['gif', 'mp4'])
        # The three resampled frames are written once for every video
        expected_files = [encoder.FRAME_FILENAME.format(i) for i in range(3)]
        self.assertEqual(ffmpeg.frame_files, [expected_files, expected_files])

    def test_loop_offset(self):
        recording = make_recording(FRAMES, [('out.gif', 'gif')], loop_offset=50.0)
        images = []

        def popen(args, **kwargs):
            frame_dir = os.path.dirname(args[args.index('-i') + 1])
            for name in sorted(os.listdir(frame_dir)):
                with open(os.path.join(frame_dir, name), 'rb') as frame_file:
                    images.append(frame_file.read())
            return FakeProcess()

        with patch('tapedeck.encoder.subprocess.Popen', side_effect=popen):
            self.encoder.encode(recording)
        # Half of three frames rounds up to a shift of two frames
        self.assertEqual(images, [b'D', b'A', b'B'])

    def test_failing_target(self):
        recording = make_recording(FRAMES, [('out.gif', 'gif'), ('out.txt', 'txt')], ['> ls'])
        ffmpeg = FakeFFmpeg(FakeProcess(returncode=1), stderr=b'Unknown encoder\n')
        with patch('tapedeck.encoder.subprocess.Popen', side_effect=ffmpeg):
            with self.assertLogs('tapedeck.encoder', level='ERROR'):
                with self.assertRaises(encoder.EncodingError) as context:
                    self.encoder.encode(recording)

        self.assertEqual(context.exception.failures,
                         [('out.gif', 'ffmpeg exited with status 1: Unknown encoder')])
        self.assertEqual(str(context.exception), 'Failed to write out.gif')
        self.assertEqual(os.listdir(self.base_dir), ['out.txt'])

    def test_missing_ffmpeg(self):
        recording = make_recording(FRAMES, [('a.webm', 'webm'), ('b.gif', 'gif')])
        with patch('tapedeck.encoder.subprocess.Popen', side_effect=FileNotFoundError()):
            with self.assertLogs('tapedeck.encoder', level='ERROR'):
                with self.assertRaises(encoder.EncodingError) as context:
                    self.encoder.encode(recording)
        self.assertEqual([path for path, _ in context.exception.failures], ['a.webm', 'b.gif'])
        self.assertTrue(context.exception.failures[0][1].startswith('cannot run ffmpeg'))
        self.assertEqual(os.listdir(self.base_dir), [])

    def test_no_visible_frame(self):
        recording = make_recording([Frame(0.0, b'X', False, None)], [('out.gif', 'gif')])
        with self.assertLogs('tapedeck.encoder', level='ERROR'):
            with self.assertRaises(encoder.EncodingError) as context:
                self.encoder.encode(recording)
        self.assertEqual(context.exception.failures,
                         [('out.gif', 'the recording has no visible frame')])

    def test_cancelled_before_encoding(self):
        recording = make_recording(FRAMES, [('out.txt', 'txt')])
        cancel_event = threading.Event()
        cancel_event.set()
        self.assertEqual(self.encoder.encode(recording, cancel_event), [])
        self.assertEqual(os.listdir(self.base_dir), [])

    def test_cancelled_while_encoding(self):
        recording = make_recording(FRAMES, [('out.gif', 'gif'), ('out.txt', 'txt')])
        cancel_event = threading.Event()
        process = FakeProcess(finishes=False)

        def popen(args, **kwargs):
            cancel_event.set()
            return process

        with patch('tapedeck.encoder.subprocess.Popen', side_effect=popen):
            self.assertEqual(self.encoder.encode(recording, cancel_event), [])
        self.assertTrue(process.killed)
        self.assertEqual(os.listdir(self.base_dir), [])
