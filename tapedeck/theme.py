"""Color themes of the terminal

Themes are either bundled with tapedeck (data/themes.json) and referred to by
name in tapes (`Set Theme "Dracula"`) or given inline as a JSON object
(`Set Theme {"background": "#000000", ...}`).
"""

import functools
import json
import pkgutil
from collections import namedtuple

THEMES_PATH = 'data/themes.json'
DEFAULT_THEME_NAME = 'Default'

ANSI_COLOR_NAMES = ['black', 'red', 'green', 'yellow', 'blue', 'magenta',
                    'cyan', 'white']
PALETTE_KEYS = ANSI_COLOR_NAMES + ['bright' + name.capitalize()
                                   for name in ANSI_COLOR_NAMES]


class ThemeError(ValueError):
    pass


_Theme = namedtuple('_Theme', ['name', 'background', 'foreground', 'cursor', 'palette'])


class Theme(_Theme):
    """Color theme of the terminal

    All colors must use the '#rrggbb' format

    name: name of the theme, None for inline themes
    background: default background color
    foreground: default text color
    cursor: color of the cursor block
    palette: tuple of the 16 ANSI colors (8 normal colors then 8 bright ones)
    """
    def __new__(cls, name, background, foreground, cursor, palette):
        for label, color in (('background', background),
                             ('foreground', foreground),
                             ('cursor', cursor)):
            if not cls.is_color(color):
                raise ThemeError('Invalid {} color: {}'.format(label, color))
        palette = tuple(palette)
        if len(palette) != 16 or not all(cls.is_color(c) for c in palette):
            raise ThemeError('Invalid palette: 16 colors in #rrggbb format are required')
        return super().__new__(cls, name, background.lower(), foreground.lower(),
                               cursor.lower(), tuple(c.lower() for c in palette))

    @staticmethod
    def is_color(color):
        if isinstance(color, str) and len(color) == 7 and color[0] == '#':
            try:
                int(color[1:], 16)
            except ValueError:
                return False
            return True
        return False

    @classmethod
    def from_dict(cls, attributes):
        """Build a theme from the attributes of a JSON theme

        'purple' is accepted in place of 'magenta'. A missing cursor color
        defaults to the foreground color."""
        if not isinstance(attributes, dict):
            raise ThemeError('A theme must be a JSON object')
        attributes = dict(attributes)
        for prefix in ('', 'bright'):
            purple = prefix + ('Purple' if prefix else 'purple')
            magenta = prefix + ('Magenta' if prefix else 'magenta')
            if magenta not in attributes and purple in attributes:
                attributes[magenta] = attributes[purple]

        missing = [key for key in PALETTE_KEYS + ['background', 'foreground']
                   if key not in attributes]
        if missing:
            raise ThemeError('Missing colors in theme: {}'.format(', '.join(missing)))

        return cls(name=attributes.get('name'),
                   background=attributes['background'],
                   foreground=attributes['foreground'],
                   cursor=attributes.get('cursor', attributes['foreground']),
                   palette=[attributes[key] for key in PALETTE_KEYS])

    @classmethod
    def from_json(cls, document):
        try:
            attributes = json.loads(document)
        except json.JSONDecodeError as exc:
            raise ThemeError('Invalid JSON theme: {}'.format(exc)) from exc
        return cls.from_dict(attributes)

    def color(self, name):
        """Return the '#rrggbb' value of a color as named by CharacterCell

        'foreground', 'background', 'colorN' (0 <= N < 16) or '#rrggbb'"""
        if name == 'foreground':
            return self.foreground
        if name == 'background':
            return self.background
        if name.startswith('color'):
            return self.palette[int(name[len('color'):])]
        return name


@functools.lru_cache(maxsize=None)
def bundled_themes():
    """Return a mapping between lowercase theme names and themes"""
    data = pkgutil.get_data(__name__, THEMES_PATH)
    return {attributes['name'].lower(): Theme.from_dict(attributes)
            for attributes in json.loads(data.decode('utf-8'))}


def theme_names():
    return sorted(theme.name for theme in bundled_themes().values())


def find_theme(name):
    """Return the bundled theme named `name` (case insensitive)

    Raise ThemeError if there is no such theme"""
    try:
        return bundled_themes()[name.lower()]
    except KeyError:
        raise ThemeError('Unknown theme: "{}"'.format(name)) from None


def default_theme():
    return find_theme(DEFAULT_THEME_NAME)
