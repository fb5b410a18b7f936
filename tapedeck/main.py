"""Command line interface of tapedeck"""

import argparse
import logging
import os
import pkgutil
import signal
import sys
import tempfile

from tapedeck import theme
from tapedeck.encoder import EncodingError, Encoder
from tapedeck.evaluator import Evaluator, RecordingCancelled, RequirementError
from tapedeck.parser import TapeSyntaxError, format_error, parse_tape
from tapedeck.term import DependencyError, DriverError, TerminalDriver, check_dependencies

logger = logging.getLogger('tapedeck')

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

USAGE = """tapedeck [tape_file] [--verbose] [--help]
Record a scripted terminal session as a GIF, MP4 or WebM video
"""
EPILOG = ("See also 'tapedeck validate --help', 'tapedeck themes --help' "
          "and 'tapedeck new --help'")
VALIDATE_USAGE = 'tapedeck validate tape_file [tape_file ...] [--verbose] [--help]'
THEMES_USAGE = 'tapedeck themes [--help]'
NEW_USAGE = 'tapedeck new name [--verbose] [--help]'


def parse(args):
    """Parse command line arguments

    :param args: Arguments to parse, without the name of the program
    :return: Tuple made of the subcommand called (None, 'validate', 'themes'
    or 'new') and all parsed arguments
    """
    verbose_parser = argparse.ArgumentParser(add_help=False)
    verbose_parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='log debugging information to a temporary file'
    )
    if args:
        if args[0] == 'validate':
            parser = argparse.ArgumentParser(
                description='check the syntax of tapes without running them',
                parents=[verbose_parser],
                usage=VALIDATE_USAGE
            )
            parser.add_argument('tape_files', nargs='+', metavar='tape_file',
                                help='tape to check')
            return 'validate', parser.parse_args(args[1:])

        if args[0] == 'themes':
            parser = argparse.ArgumentParser(
                description='list the names of the themes available for "Set Theme"',
                usage=THEMES_USAGE
            )
            parser.add_argument('--markdown', action='store_true', help=argparse.SUPPRESS)
            return 'themes', parser.parse_args(args[1:])

        if args[0] == 'new':
            parser = argparse.ArgumentParser(
                description='create a new tape from an example',
                parents=[verbose_parser],
                usage=NEW_USAGE
            )
            parser.add_argument('name', help='name of the tape, ".tape" is appended if missing')
            return 'new', parser.parse_args(args[1:])

    parser = argparse.ArgumentParser(
        prog='tapedeck',
        parents=[verbose_parser],
        usage=USAGE,
        epilog=EPILOG
    )
    parser.add_argument(
        'tape_file',
        nargs='?',
        default='-',
        help='tape to run; if missing or "-", the tape is read from standard input'
    )
    return None, parser.parse_args(args)


def read_tape(tape_file, stdin):
    if tape_file == '-':
        return stdin.read()
    with open(tape_file, 'r', encoding='utf-8') as tape:
        return tape.read()


def tape_dir(tape_file):
    """Return the directory Source paths of a tape file are relative to"""
    return os.path.dirname(os.path.abspath(tape_file))


def log_errors(tape, errors, filename=None):
    for error in errors:
        if filename is not None:
            logger.error('{}:{}'.format(filename, error))
        logger.error(format_error(tape, error).rstrip('\n'))


def run_subcommand(tape, base_dir='.', source_dir=None):
    """Run a tape and write its outputs, return the exit status

    Output and Screenshot paths are relative to `base_dir`, Source paths to
    `source_dir` (the directory of the tape file, `base_dir` if None)
    """
    try:
        check_dependencies()
    except DependencyError as exc:
        logger.error(str(exc))
        return EXIT_FAILURE

    evaluator = Evaluator(driver_factory=TerminalDriver, encoder=Encoder(base_dir=base_dir),
                          base_dir=base_dir, source_dir=source_dir)
    try:
        recording = evaluator.evaluate(tape)
    except TapeSyntaxError as exc:
        log_errors(tape, exc.errors)
        logger.error(str(exc))
        return EXIT_FAILURE
    except RequirementError as exc:
        log_errors(tape, [exc.error])
        return EXIT_FAILURE
    except DriverError as exc:
        logger.error('Terminal error: {}'.format(exc))
        return EXIT_FAILURE
    except EncodingError as exc:
        logger.error(str(exc))
        return EXIT_FAILURE
    except (RecordingCancelled, KeyboardInterrupt):
        logger.error('Recording cancelled')
        return EXIT_CANCELLED

    logger.info('Recording ended after {:.1f}s ({} frames{})'.format(
        recording.duration, len(recording.frames),
        ', {} warnings'.format(len(recording.warnings)) if recording.warnings else ''))
    return EXIT_SUCCESS


def validate_subcommand(tape_files):
    status = EXIT_SUCCESS
    for tape_file in tape_files:
        try:
            with open(tape_file, 'r', encoding='utf-8') as tape:
                text = tape.read()
        except OSError as exc:
            logger.error('{}: {}'.format(tape_file, exc.strerror))
            status = EXIT_FAILURE
            continue

        commands, errors = parse_tape(text, tape_dir(tape_file))
        if errors:
            log_errors(text, errors, tape_file)
            logger.error('{}: {} error{}'.format(tape_file, len(errors),
                                                 '' if len(errors) == 1 else 's'))
            status = EXIT_FAILURE
        else:
            logger.info('{}: {} commands, no error'.format(tape_file, len(commands)))
    return status


def themes_subcommand(markdown=False):
    prefix, suffix = '', ''
    if markdown:
        print('# Themes\n')
        prefix, suffix = '* `', '`'
    for name in theme.theme_names():
        print('{}{}{}'.format(prefix, name, suffix))


def new_subcommand(name):
    """Create a tape named `name` from the bundled example"""
    basename = name[:-len('.tape')] if name.endswith('.tape') else name
    filename = basename + '.tape'
    if os.path.exists(filename):
        logger.error('{} already exists'.format(filename))
        return EXIT_FAILURE

    demo = pkgutil.get_data(__name__.split('.')[0], 'data/demo.tape').decode('utf-8')
    output_name = os.path.basename(basename)
    with open(filename, 'w', encoding='utf-8') as tape:
        tape.write(demo.replace('demo.gif', '{}.gif'.format(output_name)))
    logger.info('Created {}'.format(filename))
    return EXIT_SUCCESS


def main(args=None, stdin=None):
    if args is None:
        args = sys.argv
    if stdin is None:
        stdin = sys.stdin

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_formatter = logging.Formatter('%(message)s')
    console_handler.setFormatter(console_formatter)
    logger.handlers = [console_handler]
    logger.setLevel(logging.INFO)

    command, args = parse(args[1:])

    if getattr(args, 'verbose', False):
        _, log_filename = tempfile.mkstemp(prefix='tapedeck_', suffix='.log')
        file_handler = logging.FileHandler(filename=log_filename, mode='w')
        file_handler.setLevel(logging.DEBUG)
        file_formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        file_handler.setFormatter(file_formatter)
        logger.handlers.append(file_handler)
        logger.setLevel(logging.DEBUG)
        logger.info('Logging to {}'.format(log_filename))

    try:
        if command == 'validate':
            status = validate_subcommand(args.tape_files)
        elif command == 'themes':
            themes_subcommand(args.markdown)
            status = EXIT_SUCCESS
        elif command == 'new':
            status = new_subcommand(args.name)
        else:
            try:
                tape = read_tape(args.tape_file, stdin)
            except OSError as exc:
                logger.error('{}: {}'.format(args.tape_file, exc.strerror))
                return EXIT_FAILURE
            if not tape.strip():
                sys.stderr.write('usage: {}'.format(USAGE))
                logger.error('tapedeck: error: no tape given')
                return EXIT_USAGE

            # Stop the recording on SIGTERM the same way as on SIGINT
            signal.signal(signal.SIGTERM, signal.default_int_handler)
            source_dir = None if args.tape_file == '-' else tape_dir(args.tape_file)
            status = run_subcommand(tape, source_dir=source_dir)
    finally:
        for handler in logger.handlers:
            handler.close()

    return status
