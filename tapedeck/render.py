"""Rasterization of terminal screens

A screen snapshot (the content of the terminal at a given time, see
`ScreenSnapshot`) is drawn onto an image reproducing a terminal window: margin,
rounded window with an optional window bar, padding, character cells and
cursor. Images are encoded as PNG.
"""

import functools
import io
import logging
from collections import namedtuple

import pyte.graphics
from PIL import Image, ImageColor, ImageDraw, ImageFont
from wcwidth import wcwidth

logger = logging.getLogger(__name__)

# Replace the RGB values of the first 16 colors of the 256 colors palette by
# their names so that CharacterCell can tell the 16 themable colors apart
# from the other ones
_COLORS = ['black', 'red', 'green', 'brown', 'blue', 'magenta', 'cyan', 'white']
_BRIGHTCOLORS = ['bright{}'.format(color) for color in _COLORS]
NAMED_COLORS = _COLORS + _BRIGHTCOLORS
pyte.graphics.FG_BG_256 = NAMED_COLORS + pyte.graphics.FG_BG_256[16:]

# Half period of the blinking cursor in seconds
CURSOR_BLINK_INTERVAL = 0.5

WINDOW_BAR_COLORS = ['#ff5f58', '#ffbd2e', '#18c132']

# File names of common monospace fonts (regular, bold). Pillow looks these up
# in the font directories of the system.
FONT_FILES = {
    'jetbrains mono': ('JetBrainsMono-Regular.ttf', 'JetBrainsMono-Bold.ttf'),
    'dejavu sans mono': ('DejaVuSansMono.ttf', 'DejaVuSansMono-Bold.ttf'),
    'liberation mono': ('LiberationMono-Regular.ttf', 'LiberationMono-Bold.ttf'),
    'ubuntu mono': ('UbuntuMono-R.ttf', 'UbuntuMono-B.ttf'),
    'noto sans mono': ('NotoSansMono-Regular.ttf', 'NotoSansMono-Bold.ttf'),
    'hack': ('Hack-Regular.ttf', 'Hack-Bold.ttf'),
    'menlo': ('Menlo.ttc', 'Menlo.ttc'),
    'consolas': ('consola.ttf', 'consolab.ttf'),
    'monospace': ('DejaVuSansMono.ttf', 'DejaVuSansMono-Bold.ttf'),
}

_CELL_ATTRIBUTES = ['text', 'color', 'background_color', 'bold', 'italics',
                    'underscore', 'strikethrough']
_CharacterCell = namedtuple('_CharacterCell', _CELL_ATTRIBUTES)
_CharacterCell.__new__.__defaults__ = ('foreground', 'background', False, False,
                                       False, False)
_CharacterCell.__doc__ = 'Representation of a character cell'
_CharacterCell.text.__doc__ = 'Text content of the cell'
_CharacterCell.color.__doc__ = "Color of the text: 'foreground', 'colorN' or '#rrggbb'"
_CharacterCell.background_color.__doc__ = "Color of the cell: 'background', 'colorN' or '#rrggbb'"


class CharacterCell(_CharacterCell):
    __slots__ = ()

    @classmethod
    def from_pyte(cls, char):
        """Create a CharacterCell from a pyte character"""
        if char.fg == 'default':
            text_color = 'foreground'
        else:
            if char.bold and not str(char.fg).startswith('bright'):
                named_color = 'bright{}'.format(char.fg)
            else:
                named_color = char.fg

            if named_color in NAMED_COLORS:
                text_color = 'color{}'.format(NAMED_COLORS.index(named_color))
            elif len(char.fg) == 6:
                # raise ValueError if char.fg is not an hexadecimal number
                int(char.fg, 16)
                text_color = '#{}'.format(char.fg.lower())
            else:
                raise ValueError('Invalid foreground color: {}'.format(char.fg))

        if char.bg == 'default':
            background_color = 'background'
        elif char.bg in NAMED_COLORS:
            background_color = 'color{}'.format(NAMED_COLORS.index(char.bg))
        elif len(char.bg) == 6:
            int(char.bg, 16)
            background_color = '#{}'.format(char.bg.lower())
        else:
            raise ValueError('Invalid background color: {}'.format(char.bg))

        if char.reverse:
            text_color, background_color = background_color, text_color

        return cls(char.data, text_color, background_color, char.bold,
                   char.italics, char.underscore, char.strikethrough)


_ScreenSnapshot = namedtuple('_ScreenSnapshot', ['columns', 'rows', 'buffer', 'cursor', 'lines'])


class ScreenSnapshot(_ScreenSnapshot):
    """Content of the terminal screen at a given time

    columns, rows: Size of the screen in character cells
    buffer: Mapping between row numbers and mappings between column numbers
            and CharacterCells. Blank cells with default colors are omitted.
    cursor: Tuple (column, row) or None if the cursor is hidden
    lines: Tuple of the text of each row
    """
    __slots__ = ()

    @property
    def text(self):
        return '\n'.join(line.rstrip() for line in self.lines)


class ConsecutiveWithSameAttributes:
    """Callable to be used as a key for itertools.groupby to group together
    consecutive elements of a list with the same attributes"""
    def __init__(self, attributes):
        self.group_index = None
        self.last_index = None
        self.attributes = attributes
        self.last_key_attributes = None

    def __call__(self, arg):
        index, obj = arg
        key_attributes = {name: getattr(obj, name) for name in self.attributes}
        if self.last_index != index - 1 or self.last_key_attributes != key_attributes:
            self.group_index = index
        self.last_index = index
        self.last_key_attributes = key_attributes
        return self.group_index, key_attributes


def _truetype(candidates, size):
    for candidate in candidates:
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    return None


@functools.lru_cache(maxsize=16)
def load_fonts(font_family, font_size):
    """Return a tuple (regular, bold) of fonts for a CSS like font family

    The first family of the comma separated list available on the system is
    used. Pillow's default font is the last resort."""
    for family in font_family.split(','):
        family = family.strip().strip('"\'')
        if not family:
            continue
        regular_file, bold_file = FONT_FILES.get(family.lower(), (None, None))
        compact = family.replace(' ', '')
        candidates = [family, compact + '.ttf', compact + '-Regular.ttf']
        if regular_file:
            candidates.insert(0, regular_file)
        regular = _truetype(candidates, font_size)
        if regular is None:
            continue
        bold = _truetype([bold_file or compact + '-Bold.ttf'], font_size) or regular
        logger.debug('Using font {} ({}px)'.format(family, font_size))
        return regular, bold

    logger.warning('None of the fonts "{}" is installed, using the default font'
                   .format(font_family))
    font = ImageFont.load_default(size=font_size)
    return font, font


def _rgb(color):
    return ImageColor.getrgb(color)


class Renderer:
    """Draw screen snapshots according to the appearance settings

    The size of the grid of character cells (`columns` and `rows`) is derived
    from the size of the image, the decorations and the font metrics."""
    def __init__(self, settings):
        self.settings = settings
        self.theme = settings.theme
        self.font, self.bold_font = load_fonts(settings.font_family, settings.font_size)

        ascent, descent = self.font.getmetrics()
        self.cell_width = max(1, int(round(self.font.getlength('M') + settings.letter_spacing)))
        self.cell_height = max(1, int(round((ascent + descent) * settings.line_height)))
        self.text_offset = (self.cell_height - (ascent + descent)) // 2

        margin = settings.margin
        bar_height = settings.window_bar_size if settings.window_bar else 0
        self.origin = (margin + settings.padding,
                       margin + bar_height + settings.padding)
        usable_width = settings.width - 2 * (margin + settings.padding)
        usable_height = settings.height - 2 * (margin + settings.padding) - bar_height
        self.columns = max(1, usable_width // self.cell_width)
        self.rows = max(1, usable_height // self.cell_height)

        self._background = self._render_background()
        self._last = None

    @property
    def geometry(self):
        return self.columns, self.rows

    def _render_background(self):
        settings = self.settings
        size = (settings.width, settings.height)
        if settings.margin_fill.startswith('#'):
            image = Image.new('RGB', size, _rgb(settings.margin_fill))
        else:
            with Image.open(settings.margin_fill) as fill:
                image = fill.convert('RGB').resize(size)

        draw = ImageDraw.Draw(image)
        margin = settings.margin
        window = (margin, margin, settings.width - margin - 1, settings.height - margin - 1)
        draw.rounded_rectangle(window, radius=settings.border_radius,
                               fill=_rgb(self.theme.background))
        if settings.window_bar:
            self._draw_window_bar(draw, window)
        return image

    def _draw_window_bar(self, draw, window):
        bar_size = self.settings.window_bar_size
        radius = max(1, bar_size // 6)
        spacing = radius * 3
        center_y = window[1] + bar_size // 2
        style = self.settings.window_bar
        if style.endswith('Right'):
            centers = [window[2] - bar_size // 2 - i * spacing for i in range(3)][::-1]
        else:
            centers = [window[0] + bar_size // 2 + i * spacing for i in range(3)]

        for center_x, color in zip(centers, WINDOW_BAR_COLORS):
            box = (center_x - radius, center_y - radius, center_x + radius, center_y + radius)
            if style.startswith('Rings'):
                draw.ellipse(box, outline=_rgb(color), width=max(1, radius // 3))
            else:
                draw.ellipse(box, fill=_rgb(color))

    def cursor_visible(self, snapshot, elapsed):
        if snapshot.cursor is None:
            return False
        if not self.settings.cursor_blink:
            return True
        return int(elapsed / CURSOR_BLINK_INTERVAL) % 2 == 0

    def draw(self, snapshot, elapsed=0.0):
        """Return a PIL image of the snapshot `elapsed` seconds after the
        beginning of the recording"""
        image = self._background.copy()
        draw = ImageDraw.Draw(image)
        for row, line in snapshot.buffer.items():
            for column, cell in sorted(line.items()):
                self._draw_cell(draw, column, row, cell)

        if self.cursor_visible(snapshot, elapsed):
            column, row = snapshot.cursor
            cell = snapshot.buffer.get(row, {}).get(column, CharacterCell(' '))
            self._draw_cell(draw, column, row, cell._replace(
                color=self.theme.background, background_color=self.theme.cursor))
        return image

    def render(self, snapshot, elapsed=0.0):
        """Return the snapshot encoded as PNG

        Consecutive calls with the same snapshot object and cursor state
        return the same bytes without drawing again."""
        cursor = self.cursor_visible(snapshot, elapsed)
        if self._last is not None and self._last[0] is snapshot and self._last[1] == cursor:
            return self._last[2]

        with io.BytesIO() as stream:
            self.draw(snapshot, elapsed).save(stream, format='PNG', compress_level=1)
            png = stream.getvalue()
        self._last = (snapshot, cursor, png)
        return png

    def _draw_cell(self, draw, column, row, cell):
        width = max(wcwidth(cell.text), 1) if cell.text else 1
        x = self.origin[0] + column * self.cell_width
        y = self.origin[1] + row * self.cell_height
        if x >= self.settings.width or y >= self.settings.height:
            return

        if cell.background_color != 'background':
            draw.rectangle((x, y, x + width * self.cell_width - 1, y + self.cell_height - 1),
                           fill=_rgb(self.theme.color(cell.background_color)))

        color = _rgb(self.theme.color(cell.color))
        if cell.text.strip():
            font = self.bold_font if cell.bold else self.font
            draw.text((x, y + self.text_offset), cell.text, font=font, fill=color)

        if cell.underscore:
            underline_y = y + self.cell_height - max(1, self.cell_height // 12) - 1
            draw.line((x, underline_y, x + width * self.cell_width - 1, underline_y),
                      fill=color)
        if cell.strikethrough:
            strike_y = y + self.cell_height // 2
            draw.line((x, strike_y, x + width * self.cell_width - 1, strike_y), fill=color)
