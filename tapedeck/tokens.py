"""Tokens of the tape language"""

from collections import namedtuple

KEYWORD = 'KEYWORD'
STRING = 'STRING'
IDENT = 'IDENT'
NUMBER = 'NUMBER'
DURATION = 'DURATION'
REGEX = 'REGEX'
JSON = 'JSON'
PUNCT = 'PUNCT'
ILLEGAL = 'ILLEGAL'
EOF = 'EOF'

COMMANDS = {
    'Type', 'Sleep', 'Wait', 'Set', 'Output', 'Require', 'Hide', 'Show',
    'Screenshot', 'Source', 'Env', 'Copy', 'Paste',
}

KEYS = {
    'Enter', 'Tab', 'Space', 'Backspace', 'Delete', 'Insert', 'Escape',
    'Up', 'Down', 'Left', 'Right', 'Home', 'End', 'PageUp', 'PageDown',
}

MODIFIERS = {'Ctrl', 'Alt', 'Shift'}

SETTINGS = {
    'Shell', 'FontFamily', 'FontSize', 'LetterSpacing', 'LineHeight', 'Theme',
    'Width', 'Height', 'Padding', 'Margin', 'MarginFill', 'BorderRadius',
    'WindowBar', 'WindowBarSize', 'CursorBlink', 'TypingSpeed',
    'PlaybackSpeed', 'Framerate', 'LoopOffset', 'WaitTimeout', 'WaitPattern',
}

KEYWORDS = COMMANDS | KEYS | MODIFIERS | SETTINGS

# Number of seconds of each unit as a (numerator, denominator) pair
DURATION_UNITS = {
    'ms': (1, 1000),
    's': (1, 1),
    'm': (60, 1),
}

_Token = namedtuple('_Token', ['kind', 'literal', 'line', 'column'])


class Token(_Token):
    """Lexical unit of a tape

    kind: One of the kind constants of this module
    literal: Text of the token. For strings, regular expressions and JSON
             documents the delimiters are stripped and escapes resolved
    line: Line of the first character of the token (starting at 1)
    column: Column of the first character of the token (starting at 1)
    """
    __slots__ = ()

    def is_keyword(self, *literals):
        return self.kind == KEYWORD and (not literals or self.literal in literals)

    def describe(self):
        if self.kind == EOF:
            return 'end of input'
        return '"{}"'.format(self.literal)


def parse_duration(literal):
    """Return the number of seconds of a duration or number literal

    '500ms' -> 0.5, '2s' -> 2.0, '1.5' -> 1.5 (bare numbers are seconds)
    Raise ValueError if the literal is not a duration."""
    for unit in sorted(DURATION_UNITS, key=len, reverse=True):
        if literal.endswith(unit):
            value = literal[:-len(unit)]
            numerator, denominator = DURATION_UNITS[unit]
            break
    else:
        value = literal
        numerator, denominator = 1, 1

    seconds = float(value) * numerator / denominator
    if seconds < 0:
        raise ValueError('duration must be positive')
    return seconds
