"""Commands of the tape language

Each verb of the language is represented by its own immutable record type.
The set of verbs is closed: COMMAND_TYPES lists every one of them and code
dispatching on commands (the evaluator for instance) is expected to handle
all of them.

All records carry the line and column of the keyword which started the
statement so that runtime warnings can point back to the tape.
"""

from collections import namedtuple

Type = namedtuple('Type', ['text', 'speed', 'line', 'column'])
Type.__doc__ = 'Type text in the terminal'
Type.speed.__doc__ = 'Delay between two keystrokes in seconds or None for TypingSpeed'

Key = namedtuple('Key', ['key', 'modifiers', 'repeat', 'speed', 'line', 'column'])
Key.__doc__ = 'Press a key, possibly with modifiers, one or several times'
Key.key.__doc__ = 'Name of the key (Enter, Tab...) or single character of a chord'
Key.modifiers.__doc__ = 'Tuple of modifiers among Ctrl, Alt and Shift'

Sleep = namedtuple('Sleep', ['duration', 'line', 'column'])
Sleep.__doc__ = 'Pause the command stream for `duration` seconds'

Wait = namedtuple('Wait', ['scope', 'timeout', 'pattern', 'line', 'column'])
Wait.__doc__ = 'Block the command stream until a pattern matches the screen'
Wait.scope.__doc__ = "'Line' (line of the cursor) or 'Screen' (whole screen)"
Wait.timeout.__doc__ = 'Timeout in seconds or None for WaitTimeout'
Wait.pattern.__doc__ = 'Regular expression or None for WaitPattern'

Set = namedtuple('Set', ['option', 'value', 'line', 'column'])
Set.__doc__ = 'Change one setting, the value is already converted'

Output = namedtuple('Output', ['path', 'format', 'line', 'column'])
Output.__doc__ = 'Request an output file'
Output.format.__doc__ = "One of 'gif', 'mp4', 'webm', 'svg', 'txt' or 'frames'"

Require = namedtuple('Require', ['program', 'line', 'column'])
Require.__doc__ = 'Abort before starting if a program is not available'

Hide = namedtuple('Hide', ['line', 'column'])
Hide.__doc__ = 'Stop showing captured frames in the output'

Show = namedtuple('Show', ['line', 'column'])
Show.__doc__ = 'Resume showing captured frames in the output'

Screenshot = namedtuple('Screenshot', ['path', 'line', 'column'])
Screenshot.__doc__ = 'Save the current screen as a PNG image'

Source = namedtuple('Source', ['path', 'line', 'column'])
Source.__doc__ = 'Include the commands of another tape'

Env = namedtuple('Env', ['name', 'value', 'line', 'column'])
Env.__doc__ = 'Set an environment variable of the shell'

Copy = namedtuple('Copy', ['text', 'line', 'column'])
Copy.__doc__ = 'Put text in the clipboard of the session'

Paste = namedtuple('Paste', ['line', 'column'])
Paste.__doc__ = 'Type the content of the clipboard of the session'

COMMAND_TYPES = (Type, Key, Sleep, Wait, Set, Output, Require, Hide, Show,
                 Screenshot, Source, Env, Copy, Paste)

# Commands which only configure the session and never interact with the
# terminal
CONFIGURATION_TYPES = (Set, Output, Require, Env)

OUTPUT_EXTENSIONS = {
    '.gif': 'gif',
    '.mp4': 'mp4',
    '.webm': 'webm',
    '.svg': 'svg',
    '.txt': 'txt',
    '.ascii': 'txt',
}

KEY_SEQUENCES = {
    'Enter': '\r',
    'Tab': '\t',
    'Space': ' ',
    'Backspace': '\x7f',
    'Delete': '\x1b[3~',
    'Insert': '\x1b[2~',
    'Escape': '\x1b',
    'Up': '\x1b[A',
    'Down': '\x1b[B',
    'Right': '\x1b[C',
    'Left': '\x1b[D',
    'Home': '\x1b[H',
    'End': '\x1b[F',
    'PageUp': '\x1b[5~',
    'PageDown': '\x1b[6~',
}

# Characters produced by Ctrl+<char> for characters outside of A-Z
_CTRL_SPECIAL = {
    '@': '\x00',
    ' ': '\x00',
    '[': '\x1b',
    '\\': '\x1c',
    ']': '\x1d',
    '^': '\x1e',
    '_': '\x1f',
    '?': '\x7f',
}


def key_sequence(key, modifiers=()):
    """Return the characters sent to the terminal for a key press

    >>> key_sequence('c', ('Ctrl',))
    '\\x03'
    >>> key_sequence('Tab', ('Shift',))
    '\\x1b[Z'
    """
    if key in KEY_SEQUENCES:
        if key == 'Tab' and 'Shift' in modifiers:
            sequence = '\x1b[Z'
        elif key == 'Enter' and 'Ctrl' in modifiers:
            sequence = '\n'
        else:
            sequence = KEY_SEQUENCES[key]
    else:
        sequence = key.upper() if 'Shift' in modifiers else key
        if 'Ctrl' in modifiers:
            if sequence.isalpha() and len(sequence) == 1 and sequence.isascii():
                sequence = chr(ord(sequence.upper()) - ord('A') + 1)
            elif sequence in _CTRL_SPECIAL:
                sequence = _CTRL_SPECIAL[sequence]
            else:
                raise ValueError('Invalid key for Ctrl: "{}"'.format(key))

    if 'Alt' in modifiers:
        sequence = '\x1b' + sequence
    return sequence


def describe(command):
    """Return a one line representation of a command close to its tape syntax"""
    name = type(command).__name__
    if isinstance(command, Type):
        return '{} "{}"'.format(name, command.text)
    if isinstance(command, Key):
        label = '+'.join(command.modifiers + (command.key,))
        if command.repeat > 1:
            return '{} {}'.format(label, command.repeat)
        return label
    if isinstance(command, Sleep):
        return '{} {:g}s'.format(name, command.duration)
    if isinstance(command, Wait):
        label = '{}+{}'.format(name, command.scope)
        if command.pattern is not None:
            label += ' /{}/'.format(command.pattern)
        return label
    if isinstance(command, Set):
        return '{} {} {}'.format(name, command.option, getattr(command.value, 'name', command.value))
    if isinstance(command, (Output, Screenshot, Source)):
        return '{} {}'.format(name, command.path)
    if isinstance(command, Require):
        return '{} {}'.format(name, command.program)
    if isinstance(command, Env):
        return '{} {} "{}"'.format(name, command.name, command.value)
    if isinstance(command, Copy):
        return '{} "{}"'.format(name, command.text)
    return name
