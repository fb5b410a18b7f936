"""Animated SVG rendering of recordings

Every distinct screen of a recording is drawn once, each screen below the
previous one, inside a group translated by a CSS animation so that only one
screen is visible at a time through the viewport of the terminal. Lines of
text shared by several screens are defined once in <defs> and referenced
with <use> elements, which keeps the size of the file proportional to the
number of distinct lines rather than to the length of the recording.
"""

import os
from collections import namedtuple
from itertools import groupby

from lxml import etree
from wcwidth import wcswidth

from tapedeck.render import WINDOW_BAR_COLORS, ConsecutiveWithSameAttributes, Renderer

SVG_NS = 'http://www.w3.org/2000/svg'
XLINK_NS = 'http://www.w3.org/1999/xlink'

# The number of character cells to leave when placing successive screens
# so content does not bleed into adjacent screens
FRAME_CELL_SPACING = 1

# Shortest time a screen stays visible, in milliseconds
MIN_DURATION = 1

AnimationFrame = namedtuple('AnimationFrame', ['time', 'duration', 'screen'])
AnimationFrame.__doc__ = 'Screen displayed during the animation'
AnimationFrame.time.__doc__ = 'Time in milliseconds at which the screen is displayed'
AnimationFrame.duration.__doc__ = 'Time in milliseconds during which the screen is displayed'


def _tag(name):
    return '{{{}}}{}'.format(SVG_NS, name)


def animation_frames(frames, playback_speed=1.0, end=None):
    """Return the list of AnimationFrames of the frames of a recording

    Consecutive frames showing the same screen are merged. Hidden frames
    extend the display of the last visible screen and leading hidden frames
    are dropped. `end` is the time at which the last screen stops being
    displayed (time of the last frame by default)."""
    changes = []
    last_screen = None
    for frame in frames:
        if frame.visible:
            last_screen = frame.screen
        if last_screen is None:
            continue
        if changes and (changes[-1][1] is last_screen or
                        changes[-1][1].buffer == last_screen.buffer):
            continue
        changes.append((frame.time, last_screen))

    if not changes:
        return []

    start = changes[0][0]
    end = max(end if end is not None else changes[-1][0], changes[-1][0])
    boundaries = [time for time, _ in changes[1:]] + [end]
    animation = []
    for (time, screen), next_time in zip(changes, boundaries):
        animation_time = int(round(1000 * (time - start) / playback_speed))
        duration = max(MIN_DURATION, int(round(1000 * (next_time - time) / playback_speed)))
        animation.append(AnimationFrame(animation_time, duration, screen))
    return animation


def render_animation(recording):
    """Return an animated SVG document of a recording as bytes"""
    settings = recording.settings
    renderer = Renderer(settings)
    frames = animation_frames(recording.frames, settings.playback_speed, recording.duration)
    if not frames:
        raise ValueError('Nothing to render: the recording has no visible frame')

    root, style, screen = _render_window(settings, renderer)
    screen_view = etree.SubElement(screen, _tag('g'), attrib={'id': 'screen_view'})

    screen_height = max(frame.screen.rows for frame in frames)
    cell_height = renderer.cell_height
    definitions = {}
    timings = {}
    for frame_count, frame in enumerate(frames):
        # Keep offsets even so that lines do not jump by one pixel between
        # two screens
        h = screen_height + FRAME_CELL_SPACING
        offset = frame_count * (h + h % 2) * cell_height
        frame_group = _render_screen(offset, frame.screen.buffer, renderer, definitions)
        screen_view.append(frame_group)
        timings[frame.time] = -offset

    tree_defs = etree.Element(_tag('defs'))
    for definition in definitions.values():
        tree_defs.append(definition)
    screen.insert(0, tree_defs)

    animation_duration = frames[-1].time + frames[-1].duration
    style.text = etree.CDATA(_css(settings, timings, animation_duration))
    return etree.tostring(root, xml_declaration=True, encoding='utf-8')


def _render_window(settings, renderer):
    """Return the root element of the document with the decorations of the
    terminal window, its style element and the nested svg element holding
    the screens"""
    width, height = settings.width, settings.height
    root = etree.Element(_tag('svg'), nsmap={None: SVG_NS, 'xlink': XLINK_NS}, attrib={
        'width': str(width),
        'height': str(height),
        'viewBox': '0 0 {} {}'.format(width, height),
    })
    defs = etree.SubElement(root, _tag('defs'))
    style = etree.SubElement(defs, _tag('style'), attrib={'id': 'generated-style'})

    if settings.margin and settings.margin_fill.startswith('#'):
        etree.SubElement(root, _tag('rect'), attrib={
            'width': '100%', 'height': '100%', 'fill': settings.margin_fill,
        })

    margin = settings.margin
    etree.SubElement(root, _tag('rect'), attrib={
        'class': 'background',
        'x': str(margin),
        'y': str(margin),
        'width': str(width - 2 * margin),
        'height': str(height - 2 * margin),
        'rx': str(settings.border_radius),
    })

    if settings.window_bar:
        bar_size = settings.window_bar_size
        radius = max(1, bar_size // 6)
        center_y = margin + bar_size // 2
        if settings.window_bar.endswith('Right'):
            centers = [width - margin - bar_size // 2 - i * radius * 3 for i in range(3)][::-1]
        else:
            centers = [margin + bar_size // 2 + i * radius * 3 for i in range(3)]
        for center_x, color in zip(centers, WINDOW_BAR_COLORS):
            attributes = {'cx': str(center_x), 'cy': str(center_y), 'r': str(radius)}
            if settings.window_bar.startswith('Rings'):
                attributes.update({'fill': 'none', 'stroke': color})
            else:
                attributes['fill'] = color
            etree.SubElement(root, _tag('circle'), attrib=attributes)

    screen_width = renderer.columns * renderer.cell_width
    screen_height = renderer.rows * renderer.cell_height
    screen = etree.SubElement(root, _tag('svg'), attrib={
        'id': 'screen',
        'x': str(renderer.origin[0]),
        'y': str(renderer.origin[1]),
        'width': str(screen_width),
        'height': str(screen_height),
        'viewBox': '0 0 {} {}'.format(screen_width, screen_height),
    })
    return root, style, screen


def _render_screen(offset, buffer, renderer, definitions):
    """Return a group element drawing the lines of a screen

    `definitions` maps the serialization of each line already defined to
    its element and is updated in place."""
    group = etree.Element(_tag('g'))
    for row_number, line in sorted(buffer.items()):
        if not line:
            continue
        y = offset + row_number * renderer.cell_height
        for tag in _render_line_bg_colors(line, y, renderer.cell_width, renderer.cell_height):
            group.append(tag)

        text_group = etree.Element(_tag('g'))
        for tag in _render_characters(line, renderer.cell_width):
            text_group.append(tag)

        key = etree.tostring(text_group)
        if key not in definitions:
            text_group.attrib['id'] = 'g{}'.format(len(definitions) + 1)
            definitions[key] = text_group
        group.append(etree.Element(_tag('use'), attrib={
            '{{{}}}href'.format(XLINK_NS): '#{}'.format(definitions[key].attrib['id']),
            'y': str(y),
        }))
    return group


def _render_line_bg_colors(line, y, cell_width, cell_height):
    """Return 'rect' elements for the cells of a line with a non default
    background, one for each run of cells with the same background"""
    cells = [(column, cell) for column, cell in sorted(line.items())
             if cell.background_color != 'background']

    key = ConsecutiveWithSameAttributes(['background_color'])
    tags = []
    for (column, attributes), group in groupby(cells, key):
        length = max(1, wcswidth(''.join(cell.text for _, cell in group)))
        rect_attributes = {
            'x': str(column * cell_width),
            'y': str(y),
            'width': str(length * cell_width),
            'height': str(cell_height),
        }
        color = attributes['background_color']
        if color.startswith('#'):
            rect_attributes['fill'] = color
        else:
            rect_attributes['class'] = color
        tags.append(etree.Element(_tag('rect'), attrib=rect_attributes))
    return tags


def _make_text_tag(column, attributes, text, cell_width):
    text_attributes = {
        'x': str(column * cell_width),
        'textLength': str(max(1, wcswidth(text)) * cell_width),
    }
    if attributes['bold']:
        text_attributes['font-weight'] = 'bold'
    if attributes['italics']:
        text_attributes['font-style'] = 'italic'

    decoration = []
    if attributes['underscore']:
        decoration.append('underline')
    if attributes['strikethrough']:
        decoration.append('line-through')
    if decoration:
        text_attributes['text-decoration'] = ' '.join(decoration)

    if attributes['color'].startswith('#'):
        text_attributes['fill'] = attributes['color']
    else:
        text_attributes['class'] = attributes['color']

    text_tag = etree.Element(_tag('text'), attrib=text_attributes)
    text_tag.text = text
    return text_tag


def _render_characters(line, cell_width):
    """Return 'text' elements for a line, consecutive characters with the
    same style being grouped in a single element"""
    key = ConsecutiveWithSameAttributes(['color', 'bold', 'italics', 'underscore',
                                         'strikethrough'])
    return [_make_text_tag(column, attributes, ''.join(cell.text for _, cell in group),
                           cell_width)
            for (column, attributes), group in groupby(sorted(line.items()), key)]


def _css(settings, timings, animation_duration):
    if animation_duration <= 0:
        raise ValueError('Animation duration must be greater than 0')

    theme = settings.theme
    colors = ['.foreground {{fill: {}}}'.format(theme.foreground),
              '.background {{fill: {}}}'.format(theme.background)]
    colors.extend('.color{} {{fill: {}}}'.format(index, color)
                  for index, color in enumerate(theme.palette))

    transforms = []
    last_offset = None
    transform_format = '{time:.3f}%{{transform:translateY({offset}px)}}'
    for time, offset in sorted(timings.items()):
        transforms.append(transform_format.format(time=100.0 * time / animation_duration,
                                                  offset=offset))
        last_offset = offset
    if last_offset is not None:
        transforms.append(transform_format.format(time=100, offset=last_offset))

    return """
        #screen {{
            font-family: {font_family};
            font-style: normal;
            font-size: {font_size}px;
        }}

        text {{
            dominant-baseline: text-before-edge;
            white-space: pre;
        }}

        {colors}

        @keyframes roll {{
            {transforms}
        }}

        #screen_view {{
            animation-duration: {duration}ms;
            animation-iteration-count: infinite;
            animation-name: roll;
            animation-timing-function: steps(1,end);
            animation-fill-mode: forwards;
        }}
    """.format(font_family=settings.font_family,
               font_size=settings.font_size,
               colors=os.linesep.join(colors),
               transforms=os.linesep.join(transforms),
               duration=animation_duration)
