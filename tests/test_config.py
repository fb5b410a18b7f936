import unittest

from tapedeck import config, tokens
from tapedeck.theme import ThemeError, find_theme

INLINE_THEME = ('{"background": "#000000", "foreground": "#FFFFFF", '
                '"black": "#000000", "red": "#111111", "green": "#222222", '
                '"yellow": "#333333", "blue": "#444444", "purple": "#555555", '
                '"cyan": "#666666", "white": "#777777", "brightBlack": "#888888", '
                '"brightRed": "#999999", "brightGreen": "#aaaaaa", '
                '"brightYellow": "#bbbbbb", "brightBlue": "#cccccc", '
                '"brightPurple": "#dddddd", "brightCyan": "#eeeeee", '
                '"brightWhite": "#ffffff"}')


class TestConvert(unittest.TestCase):
    def test_convert(self):
        test_cases = [
            ('Shell', 'zsh', 'zsh'),
            ('FontSize', '32', 32),
            ('LetterSpacing', '-1.5', -1.5),
            ('LineHeight', '1.2', 1.2),
            ('Width', '800', 800),
            ('Padding', '0', 0),
            ('MarginFill', '#6B50FF', '#6b50ff'),
            ('WindowBar', 'ColorfulRight', 'ColorfulRight'),
            ('CursorBlink', 'False', False),
            ('CursorBlink', 'true', True),
            ('TypingSpeed', '75ms', 0.075),
            ('TypingSpeed', '0', 0.0),
            ('PlaybackSpeed', '0.5', 0.5),
            ('Framerate', '30', 30),
            ('LoopOffset', '20%', 20.0),
            ('LoopOffset', '50', 50.0),
            ('WaitTimeout', '1m', 60.0),
            ('WaitPattern', 'ready>$', 'ready>$'),
        ]
        for option, literal, value in test_cases:
            with self.subTest(case=(option, literal)):
                self.assertEqual(config.convert(option, literal), value)

    def test_convert_invalid(self):
        test_cases = [
            ('Shell', 'powershell'),
            ('FontSize', '0'),
            ('FontSize', 'big'),
            ('LineHeight', '-1'),
            ('Padding', '-1'),
            ('WindowBar', 'Fancy'),
            ('CursorBlink', 'yes'),
            ('PlaybackSpeed', '0'),
            ('LoopOffset', '120%'),
            ('WaitPattern', '('),
            ('FontFamily', '  '),
            ('TypingSpeed', '-1s'),
        ]
        for option, literal in test_cases:
            with self.subTest(case=(option, literal)):
                with self.assertRaisesRegex(ValueError, 'Invalid value for {}'.format(option)):
                    config.convert(option, literal)

    def test_convert_theme(self):
        self.assertEqual(config.convert('Theme', 'dracula'), find_theme('Dracula'))
        inline = config.convert('Theme', INLINE_THEME)
        self.assertIsNone(inline.name)
        self.assertEqual(inline.palette[5], '#555555')
        self.assertEqual(inline.cursor, '#ffffff')
        with self.assertRaises(ThemeError):
            config.convert('Theme', 'no such theme')

    def test_every_option_is_a_keyword(self):
        self.assertEqual(set(config.OPTIONS), tokens.SETTINGS)


class TestSettings(unittest.TestCase):
    def test_defaults(self):
        settings = config.Settings.defaults()
        self.assertEqual(settings.shell, 'bash')
        self.assertEqual(settings.framerate, 50)
        self.assertEqual(settings.wait_timeout, 15.0)
        self.assertEqual(settings.outputs, ())
        self.assertEqual(settings.theme.name, 'Default')

    def test_set_replaces_value(self):
        settings = config.Settings.defaults()
        updated = settings.set('FontSize', 40)
        self.assertEqual(updated.font_size, 40)
        self.assertEqual(settings.font_size, 22)
        self.assertEqual(updated._replace(font_size=22), settings)

    def test_add_output(self):
        settings = (config.Settings.defaults()
                    .add_output('a.gif', 'gif')
                    .add_output('a.mp4', 'mp4'))
        self.assertEqual(settings.outputs, (('a.gif', 'gif'), ('a.mp4', 'mp4')))

    def test_shell_command(self):
        for shell in config.SHELLS:
            with self.subTest(case=shell):
                settings = config.Settings.defaults().set('Shell', shell)
                args, env = settings.shell_command()
                self.assertEqual(args[0], shell)
                self.assertIsInstance(env, dict)
                # The command line is a copy
                args.append('--extra')
                self.assertNotIn('--extra', settings.shell_command()[0])
