"""Production of the output files of a recording

Video formats (GIF, MP4 and WebM) are encoded by ffmpeg from PNG images
written to a temporary directory. The frames captured during a recording
are not evenly spaced in time, so they are first resampled on the time grid
of the output framerate.

Each output is first written to a temporary file in the directory of its
destination and then moved into place, so that an output file is either
complete or absent.
"""

import contextlib
import logging
import math
import os
import shutil
import subprocess
import tempfile

from tapedeck import anim

logger = logging.getLogger(__name__)

TRANSCRIPT_RULE = '─' * 80
FFMPEG_POLL_INTERVAL = 0.05
FRAME_FILENAME = 'frame_{:06d}.png'
FFMPEG_FRAME_PATTERN = 'frame_%06d.png'

# Codec parameters of each video format
VIDEO_PARAMETERS = {
    'gif': ['-loop', '0'],
    'mp4': ['-c:v', 'libx264', '-pix_fmt', 'yuv420p', '-crf', '20',
            '-movflags', '+faststart'],
    'webm': ['-c:v', 'libvpx-vp9', '-pix_fmt', 'yuv420p', '-crf', '30', '-b:v', '0'],
}


class EncodingError(Exception):
    """One or more outputs could not be written"""
    def __init__(self, failures):
        self.failures = list(failures)
        super().__init__('Failed to write {}'.format(
            ', '.join(path for path, _ in self.failures)))


class _TargetError(Exception):
    pass


class _Cancelled(Exception):
    pass


def _remove(path):
    try:
        if os.path.isdir(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    except FileNotFoundError:
        pass


@contextlib.contextmanager
def atomic_path(path, directory=False):
    """Yield a temporary path next to `path` which is moved to `path` when
    the block exits normally and removed otherwise"""
    destination = os.path.abspath(path)
    parent = os.path.dirname(destination)
    os.makedirs(parent, exist_ok=True)
    prefix = '.{}-'.format(os.path.basename(destination))
    if directory:
        temp_path = tempfile.mkdtemp(dir=parent, prefix=prefix)
    else:
        fd, temp_path = tempfile.mkstemp(dir=parent, prefix=prefix,
                                         suffix=os.path.splitext(destination)[1])
        os.close(fd)

    try:
        yield temp_path
        if directory and os.path.isdir(destination):
            shutil.rmtree(destination)
        os.replace(temp_path, destination)
    except BaseException:
        _remove(temp_path)
        raise


def write_atomically(path, data):
    with atomic_path(path) as temp_path:
        with open(temp_path, 'wb') as temp_file:
            temp_file.write(data)


def resample(frames, framerate):
    """Return the images displayed at each tick of the output framerate

    Tick `i` shows the image of the latest frame captured at or before
    `i / framerate` seconds after the first visible frame. Hidden frames show
    the last visible image, leading hidden frames are dropped."""
    timeline = []
    last_image = None
    for frame in frames:
        if frame.visible:
            last_image = frame.image
        if last_image is not None:
            timeline.append((frame.time, last_image))
    if not timeline:
        return []

    start, end = timeline[0][0], timeline[-1][0]
    count = int(math.floor((end - start) * framerate + 1e-9)) + 1
    slots = []
    index = 0
    for tick in range(count):
        tick_time = start + tick / framerate
        while index + 1 < len(timeline) and timeline[index + 1][0] <= tick_time + 1e-9:
            index += 1
        slots.append(timeline[index][1])
    return slots


def rotate(slots, loop_offset):
    """Rotate slots to the left by `loop_offset` percent of their number"""
    if not slots:
        return slots
    shift = math.ceil(loop_offset / 100 * len(slots)) % len(slots)
    return slots[shift:] + slots[:shift]


def transcript_text(transcript):
    return ''.join('{}\n{}\n'.format(text, TRANSCRIPT_RULE) for text in transcript)


def ffmpeg_arguments(ffmpeg, frame_pattern, output_path, output_format, settings):
    """Return the command line encoding numbered frames to a video file"""
    width, height = settings.width, settings.height
    if output_format != 'gif':
        # yuv420p requires even dimensions
        width, height = width - width % 2, height - height % 2

    filters = 'setpts=PTS/{:g},scale={}:{}:flags=lanczos'.format(settings.playback_speed,
                                                                  width, height)
    args = [ffmpeg, '-y', '-loglevel', 'error',
            '-framerate', str(settings.framerate), '-i', frame_pattern]
    if output_format == 'gif':
        args += ['-filter_complex',
                 '[0:v]{},split[a][b];[a]palettegen=max_colors=256[p];[b][p]paletteuse'
                 .format(filters)]
    else:
        args += ['-vf', filters]
    args += VIDEO_PARAMETERS[output_format]
    args += ['-f', output_format, output_path]
    return args


class Encoder:
    """Write the outputs requested by a recording

    ffmpeg: Name or path of the ffmpeg executable
    base_dir: Directory relative output paths are resolved against
    """
    def __init__(self, ffmpeg='ffmpeg', base_dir='.'):
        self.ffmpeg = ffmpeg
        self.base_dir = base_dir

    def encode(self, recording, cancel_event=None):
        """Write every output of the recording and return their paths

        A failing output does not prevent the next ones from being written,
        EncodingError lists all the failures at the end. Encoding stops early,
        leaving no partial file behind, when `cancel_event` is set."""
        outputs = recording.settings.outputs
        if not outputs:
            logger.info('No Output command in tape, nothing to write')
            return []

        written = []
        failures = []
        with tempfile.TemporaryDirectory(prefix='tapedeck_') as frame_dir:
            frames_written = False
            for path, output_format in outputs:
                destination = os.path.join(self.base_dir, os.path.expanduser(path))
                logger.info('Writing {}'.format(path))
                try:
                    if cancel_event is not None and cancel_event.is_set():
                        raise _Cancelled()
                    if output_format in VIDEO_PARAMETERS:
                        if not frames_written:
                            self._write_slots(recording, frame_dir)
                            frames_written = True
                        self._encode_video(recording, frame_dir, destination,
                                           output_format, cancel_event)
                    elif output_format == 'frames':
                        self._write_frames(recording, destination)
                    elif output_format == 'txt':
                        write_atomically(destination,
                                         transcript_text(recording.transcript).encode('utf-8'))
                    elif output_format == 'svg':
                        write_atomically(destination, anim.render_animation(recording))
                    else:
                        raise _TargetError('Unsupported output format: {}'.format(output_format))
                except _Cancelled:
                    logger.info('Encoding cancelled')
                    break
                except (_TargetError, OSError, ValueError) as exc:
                    logger.error('Failed to write {}: {}'.format(path, exc))
                    failures.append((path, str(exc)))
                else:
                    written.append(destination)

        if failures:
            raise EncodingError(failures)
        return written

    def _write_slots(self, recording, frame_dir):
        settings = recording.settings
        slots = rotate(resample(recording.frames, settings.framerate), settings.loop_offset)
        if not slots:
            raise _TargetError('the recording has no visible frame')
        for index, image in enumerate(slots):
            with open(os.path.join(frame_dir, FRAME_FILENAME.format(index)), 'wb') as frame_file:
                frame_file.write(image)
        logger.debug('{} frames written to {}'.format(len(slots), frame_dir))

    def _encode_video(self, recording, frame_dir, destination, output_format, cancel_event):
        with atomic_path(destination) as temp_path:
            args = ffmpeg_arguments(self.ffmpeg, os.path.join(frame_dir, FFMPEG_FRAME_PATTERN),
                                    temp_path, output_format, recording.settings)
            self._run_ffmpeg(args, cancel_event)

    def _run_ffmpeg(self, args, cancel_event):
        logger.debug('Running {}'.format(' '.join(args)))
        with tempfile.TemporaryFile() as stderr:
            try:
                process = subprocess.Popen(args, stdin=subprocess.DEVNULL,
                                           stdout=subprocess.DEVNULL, stderr=stderr)
            except OSError as exc:
                raise _TargetError('cannot run {}: {}'.format(args[0], exc)) from exc

            try:
                while True:
                    try:
                        process.wait(FFMPEG_POLL_INTERVAL)
                        break
                    except subprocess.TimeoutExpired:
                        if cancel_event is not None and cancel_event.is_set():
                            raise _Cancelled()
            except BaseException:
                process.kill()
                process.wait()
                raise

            if process.returncode != 0:
                stderr.seek(0)
                message = stderr.read().decode('utf-8', 'replace').strip()
                raise _TargetError('ffmpeg exited with status {}: {}'
                                   .format(process.returncode, message))

    def _write_frames(self, recording, destination):
        """Write every captured frame, hidden ones included, to a directory"""
        if not recording.frames:
            raise _TargetError('the recording has no frame')
        with atomic_path(destination, directory=True) as temp_dir:
            for index, frame in enumerate(recording.frames):
                with open(os.path.join(temp_dir, FRAME_FILENAME.format(index)), 'wb') as frame_file:
                    frame_file.write(frame.image)
