"""Settings of a recording session

Settings are changed by `Set` commands in tapes. Each option is converted and
validated by a dedicated function so that invalid values are reported when
the tape is parsed instead of when it is executed.
"""

import os
import re
from collections import namedtuple

from tapedeck import theme as theme_module
from tapedeck.tokens import parse_duration

DEFAULT_FONT_FAMILY = ('JetBrains Mono,DejaVu Sans Mono,Menlo,Liberation Mono,'
                       'Ubuntu Mono,Hack,Consolas,monospace')

WINDOW_BAR_STYLES = ['Colorful', 'ColorfulRight', 'Rings', 'RingsRight']

# Commands starting each supported shell with a distinctive prompt and
# without user configuration so that recordings are reproducible
PROMPT_COLOR = '5B56E0'
SHELLS = {
    'bash': (
        ['bash', '--noprofile', '--norc', '--login', '+o', 'history'],
        {
            'PS1': '\\[\\e[38;2;91;86;224m\\]> \\[\\e[0m\\]',
            'BASH_SILENCE_DEPRECATION_WARNING': '1',
        },
    ),
    'zsh': (
        ['zsh', '--histnostore', '--no-rcs'],
        {'PROMPT': '%F{{#{}}}> %F{{reset_color}}'.format(PROMPT_COLOR)},
    ),
    'fish': (
        ['fish', '--login', '--no-config', '--private',
         '-C', 'function fish_greeting; end',
         '-C', 'function fish_prompt; set_color {}; echo -n "> "; '
               'set_color normal; end'.format(PROMPT_COLOR)],
        {},
    ),
    'sh': (
        ['sh'],
        {'PS1': '> '},
    ),
}


def validate_positive_integer(value):
    """Raise ValueError if 'value' is not an integer greater than 0"""
    number = int(value)
    if number <= 0:
        raise ValueError('expected an integer greater than 0, got "{}"'.format(value))
    return number


def validate_size(value):
    """Raise ValueError if 'value' is not a positive integer or zero"""
    number = int(value)
    if number < 0:
        raise ValueError('expected a positive integer, got "{}"'.format(value))
    return number


def validate_positive_float(value):
    number = float(value)
    if number <= 0:
        raise ValueError('expected a number greater than 0, got "{}"'.format(value))
    return number


def validate_shell(value):
    if value not in SHELLS:
        raise ValueError('unsupported shell "{}" (expected one of {})'
                         .format(value, ', '.join(sorted(SHELLS))))
    return value


def validate_theme(value):
    """Return the theme for a bundled theme name or an inline JSON theme"""
    if value.lstrip().startswith('{'):
        return theme_module.Theme.from_json(value)
    return theme_module.find_theme(value)


def validate_margin_fill(value):
    if theme_module.Theme.is_color(value):
        return value.lower()
    if not value:
        raise ValueError('expected a color or the path of an image')
    return os.path.expanduser(value)


def validate_window_bar(value):
    if value not in WINDOW_BAR_STYLES:
        raise ValueError('invalid window bar "{}" (expected one of {})'
                         .format(value, ', '.join(WINDOW_BAR_STYLES)))
    return value


def validate_boolean(value):
    if value.lower() == 'true':
        return True
    if value.lower() == 'false':
        return False
    raise ValueError('expected true or false, got "{}"'.format(value))


def validate_percentage(value):
    """Return the percentage of '20%' or '20' as a float in [0, 100]"""
    number = float(value[:-1] if value.endswith('%') else value)
    if not 0 <= number <= 100:
        raise ValueError('expected a percentage between 0 and 100, got "{}"'.format(value))
    return number


def validate_pattern(value):
    try:
        re.compile(value)
    except re.error as exc:
        raise ValueError('invalid regular expression "{}": {}'.format(value, exc)) from exc
    return value


def validate_font_family(value):
    if not value.strip():
        raise ValueError('expected a font family')
    return value


# Mapping between the name of an option in tapes and the settings field it
# sets together with the converter of its value
OPTIONS = {
    'Shell': ('shell', validate_shell),
    'FontFamily': ('font_family', validate_font_family),
    'FontSize': ('font_size', validate_positive_integer),
    'LetterSpacing': ('letter_spacing', float),
    'LineHeight': ('line_height', validate_positive_float),
    'Theme': ('theme', validate_theme),
    'Width': ('width', validate_positive_integer),
    'Height': ('height', validate_positive_integer),
    'Padding': ('padding', validate_size),
    'Margin': ('margin', validate_size),
    'MarginFill': ('margin_fill', validate_margin_fill),
    'BorderRadius': ('border_radius', validate_size),
    'WindowBar': ('window_bar', validate_window_bar),
    'WindowBarSize': ('window_bar_size', validate_size),
    'CursorBlink': ('cursor_blink', validate_boolean),
    'TypingSpeed': ('typing_speed', parse_duration),
    'PlaybackSpeed': ('playback_speed', validate_positive_float),
    'Framerate': ('framerate', validate_positive_integer),
    'LoopOffset': ('loop_offset', validate_percentage),
    'WaitTimeout': ('wait_timeout', parse_duration),
    'WaitPattern': ('wait_pattern', validate_pattern),
}

# Options changing the appearance or the geometry of the terminal: changing
# them requires restyling the terminal
STYLE_OPTIONS = {
    'FontFamily', 'FontSize', 'LetterSpacing', 'LineHeight', 'Theme', 'Width',
    'Height', 'Padding', 'Margin', 'MarginFill', 'BorderRadius', 'WindowBar',
    'WindowBarSize', 'CursorBlink',
}

# Options which can only take effect before the terminal is started
STARTUP_OPTIONS = {'Shell'}


def convert(option, value):
    """Return the value of `option` converted from its literal `value`

    Raise KeyError for unknown options and ValueError for invalid values"""
    _, converter = OPTIONS[option]
    try:
        return converter(value)
    except theme_module.ThemeError:
        raise
    except (TypeError, ValueError) as exc:
        raise ValueError('Invalid value for {}: {}'.format(option, exc)) from exc


_SETTINGS_FIELDS = [
    'shell', 'font_family', 'font_size', 'letter_spacing', 'line_height',
    'theme', 'width', 'height', 'padding', 'margin', 'margin_fill',
    'border_radius', 'window_bar', 'window_bar_size', 'cursor_blink',
    'typing_speed', 'playback_speed', 'framerate', 'loop_offset',
    'wait_timeout', 'wait_pattern', 'outputs',
]
_Settings = namedtuple('_Settings', _SETTINGS_FIELDS)


class Settings(_Settings):
    """Immutable configuration of a recording session

    Durations are in seconds, sizes in pixels. `outputs` is a tuple of
    (path, format) pairs. Use `set` to obtain a copy with a new value for an
    option."""
    __slots__ = ()

    @classmethod
    def defaults(cls):
        return cls(
            shell='bash',
            font_family=DEFAULT_FONT_FAMILY,
            font_size=22,
            letter_spacing=0.0,
            line_height=1.0,
            theme=theme_module.default_theme(),
            width=1200,
            height=600,
            padding=60,
            margin=0,
            margin_fill='#6b50ff',
            border_radius=0,
            window_bar=None,
            window_bar_size=30,
            cursor_blink=True,
            typing_speed=0.05,
            playback_speed=1.0,
            framerate=50,
            loop_offset=0.0,
            wait_timeout=15.0,
            wait_pattern='>$',
            outputs=(),
        )

    def set(self, option, value):
        """Return new settings where `option` (as named in tapes) is `value`

        `value` must already be converted (see `convert`)"""
        field, _ = OPTIONS[option]
        return self._replace(**{field: value})

    def add_output(self, path, output_format):
        return self._replace(outputs=self.outputs + ((path, output_format),))

    def shell_command(self):
        """Return the command line and environment variables of the shell"""
        args, env = SHELLS[self.shell]
        return list(args), dict(env)
