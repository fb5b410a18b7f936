"""Parser of the tape language

Tapes are made of statements, one per line. The parser is a recursive
descent parser consuming the tokens produced by the lexer. When a statement is
invalid, an error is recorded at the offending token and parsing resumes at
the next line: a single pass reports every invalid statement of a tape.
"""

import os
import re
from collections import namedtuple

from tapedeck import command, config, tokens
from tapedeck.lexer import tokenize

_Diagnostic = namedtuple('_Diagnostic', ['line', 'column', 'length', 'message'])


class Diagnostic(_Diagnostic):
    """Message about a position in a tape

    line, column: Position of the first character (starting at 1)
    length: Number of characters to underline
    message: Human readable description of the problem
    """
    __slots__ = ()

    def __str__(self):
        return '{}:{}: {}'.format(self.line, self.column, self.message)


class ParseError(Diagnostic):
    __slots__ = ()


class TapeSyntaxError(Exception):
    """Raised when a tape contains at least one invalid statement"""
    def __init__(self, errors, tape=None):
        self.errors = list(errors)
        self.tape = tape
        count = len(self.errors)
        super().__init__('{} syntax error{} in tape'.format(count, '' if count == 1 else 's'))


class _StatementError(Exception):
    def __init__(self, token, message):
        super().__init__(message)
        self.token = token
        self.message = message


# Kinds of tokens which can stand for a string argument. Bare words are
# accepted so that paths and names do not need to be quoted.
TEXT_KINDS = (tokens.STRING, tokens.IDENT)
VALUE_KINDS = (tokens.STRING, tokens.IDENT, tokens.NUMBER)
TIME_KINDS = (tokens.DURATION, tokens.NUMBER)

WAIT_SCOPES = ('Line', 'Screen')


class Parser:
    def __init__(self, token_list):
        self.tokens = token_list
        self.index = 0
        self.errors = []
        # First token of the statement being parsed
        self.statement = None

    @property
    def current(self):
        return self.tokens[self.index]

    def _advance(self):
        token = self.current
        if token.kind != tokens.EOF:
            self.index += 1
        return token

    def _error(self, token, message):
        length = max(len(token.literal), 1)
        error = ParseError(token.line, token.column, length, message)
        if error not in self.errors:
            self.errors.append(error)

    def _skip_line(self, line):
        while self.current.kind != tokens.EOF and self.current.line == line:
            self._advance()

    def _argument(self):
        """Return the next token if it belongs to the current statement"""
        token = self.current
        if token.kind == tokens.EOF or token.line != self.statement.line:
            return None
        return token

    def _expect(self, kinds, description):
        """Consume and return the next argument of the statement

        Raise _StatementError if the argument is missing or of another kind"""
        token = self._argument()
        if token is None:
            raise _StatementError(self.statement, 'Expected {} after {}'
                                  .format(description, self.statement.literal))
        if token.kind not in kinds:
            if token.kind == tokens.ILLEGAL:
                raise _StatementError(token, _illegal_message(token))
            raise _StatementError(token, 'Expected {} after {}, got {}'
                                  .format(description, self.statement.literal,
                                          token.describe()))
        return self._advance()

    def _accept_punctuation(self, char):
        token = self._argument()
        if token is not None and token.kind == tokens.PUNCT and token.literal == char:
            return self._advance()
        return None

    def parse(self):
        """Return the list of commands of the tape

        Invalid statements are left out of the list and reported in
        `self.errors`"""
        commands = []
        while self.current.kind != tokens.EOF:
            self.statement = self.current
            try:
                cmd = self._parse_statement()
                trailing = self._argument()
                if trailing is not None:
                    raise _StatementError(trailing, 'Unexpected {} after {}'
                                          .format(trailing.describe(), self.statement.literal))
            except _StatementError as exc:
                self._error(exc.token, exc.message)
                self._skip_line(self.statement.line)
            else:
                commands.append(cmd)
        return commands

    def _parse_statement(self):
        token = self._advance()
        position = (token.line, token.column)

        if token.kind == tokens.ILLEGAL:
            raise _StatementError(token, _illegal_message(token))
        if token.kind != tokens.KEYWORD:
            raise _StatementError(token, 'Invalid command: {}'.format(token.literal))

        if token.literal in tokens.KEYS:
            return self._parse_key(token, position)
        if token.literal in tokens.MODIFIERS:
            return self._parse_chord(token, position)

        parse_method = getattr(self, '_parse_{}'.format(token.literal.lower()), None)
        if token.literal not in tokens.COMMANDS or parse_method is None:
            raise _StatementError(token, 'Invalid command: {}'.format(token.literal))
        return parse_method(position)

    def _parse_speed(self):
        """Parse an optional '@<duration>' suffix"""
        if self._accept_punctuation('@') is None:
            return None
        token = self._expect(TIME_KINDS, 'a duration')
        return _duration(token)

    def _parse_key(self, token, position):
        speed = self._parse_speed()
        repeat = 1
        count = self._argument()
        if count is not None and count.kind == tokens.NUMBER:
            self._advance()
            if not count.literal.isdigit() or int(count.literal) < 1:
                raise _StatementError(count, 'Expected a positive integer as repeat count, got {}'
                                      .format(count.describe()))
            repeat = int(count.literal)
        return command.Key(token.literal, (), repeat, speed, *position)

    def _parse_chord(self, token, position):
        modifiers = [token.literal]
        while True:
            if self._accept_punctuation('+') is None:
                raise _StatementError(self.current if self._argument() else token,
                                      'Expected "+" after {}'.format(modifiers[-1]))
            key = self._argument()
            if key is None:
                raise _StatementError(token, 'Expected a key after {}'.format('+'.join(modifiers)))
            self._advance()
            if key.is_keyword(*tokens.MODIFIERS) and key.literal not in modifiers:
                modifiers.append(key.literal)
                continue
            if key.is_keyword(*tokens.KEYS):
                name = key.literal
            elif key.kind != tokens.KEYWORD and len(key.literal) == 1:
                name = key.literal
            else:
                raise _StatementError(key, 'Invalid key for {}: {}'
                                      .format('+'.join(modifiers), key.literal))
            try:
                command.key_sequence(name, tuple(modifiers))
            except ValueError as exc:
                raise _StatementError(key, str(exc)) from None
            return command.Key(name, tuple(modifiers), 1, None, *position)

    def _parse_type(self, position):
        speed = self._parse_speed()
        parts = [self._expect(TEXT_KINDS + (tokens.NUMBER,), 'text').literal]
        while self._argument() is not None and self.current.kind in TEXT_KINDS:
            parts.append(self._advance().literal)
        return command.Type(' '.join(parts), speed, *position)

    def _parse_sleep(self, position):
        token = self._expect(TIME_KINDS, 'a duration')
        return command.Sleep(_duration(token), *position)

    def _parse_wait(self, position):
        scope = 'Line'
        if self._accept_punctuation('+') is not None:
            token = self._expect((tokens.IDENT,), 'Line or Screen')
            if token.literal not in WAIT_SCOPES:
                raise _StatementError(token, 'Invalid scope for Wait: {} (expected Line or Screen)'
                                      .format(token.literal))
            scope = token.literal
        timeout = self._parse_speed()
        pattern = None
        token = self._argument()
        if token is not None:
            token = self._expect((tokens.REGEX,), 'a regular expression')
            pattern = _pattern(token)
        return command.Wait(scope, timeout, pattern, *position)

    def _parse_set(self, position):
        option = self._argument()
        if option is None:
            raise _StatementError(self.statement, 'Expected a setting after Set')
        self._advance()
        if not option.is_keyword(*tokens.SETTINGS):
            raise _StatementError(option, 'Unknown setting: {}'.format(option.literal))

        name = option.literal
        if name == 'LoopOffset':
            token = self._expect((tokens.NUMBER,), 'a percentage')
            literal = token.literal
            if self._accept_punctuation('%') is not None:
                literal += '%'
        elif name in ('TypingSpeed', 'WaitTimeout'):
            token = self._expect(TIME_KINDS, 'a duration')
            literal = token.literal
        elif name == 'Theme':
            token = self._expect(TEXT_KINDS + (tokens.JSON,), 'a theme name or JSON theme')
            literal = token.literal
        elif name == 'WaitPattern':
            token = self._expect((tokens.REGEX, tokens.STRING), 'a regular expression')
            literal = token.literal
        else:
            token = self._expect(VALUE_KINDS, 'a value for {}'.format(name))
            literal = token.literal

        try:
            value = config.convert(name, literal)
        except ValueError as exc:
            raise _StatementError(token, str(exc)) from None
        return command.Set(name, value, *position)

    def _parse_output(self, position):
        token = self._expect(TEXT_KINDS, 'a path')
        path = token.literal
        if path.endswith('/'):
            return command.Output(path, 'frames', *position)
        _, extension = os.path.splitext(path)
        output_format = command.OUTPUT_EXTENSIONS.get(extension.lower())
        if output_format is None:
            raise _StatementError(token, 'Expected file with {} extension or a directory '
                                         'ending with "/"'
                                  .format(', '.join(sorted(command.OUTPUT_EXTENSIONS))))
        return command.Output(path, output_format, *position)

    def _parse_require(self, position):
        token = self._expect(TEXT_KINDS, 'a program name')
        return command.Require(token.literal, *position)

    def _parse_hide(self, position):
        return command.Hide(*position)

    def _parse_show(self, position):
        return command.Show(*position)

    def _parse_screenshot(self, position):
        token = self._expect(TEXT_KINDS, 'a path')
        if not token.literal.lower().endswith('.png'):
            raise _StatementError(token, 'Expected file with .png extension')
        return command.Screenshot(token.literal, *position)

    def _parse_source(self, position):
        token = self._expect(TEXT_KINDS, 'a path')
        if not token.literal.endswith('.tape'):
            raise _StatementError(token, 'Expected file with .tape extension')
        return command.Source(token.literal, *position)

    def _parse_env(self, position):
        name = self._expect(TEXT_KINDS, 'a variable name')
        if not re.fullmatch(r'[A-Za-z_][A-Za-z0-9_]*', name.literal):
            raise _StatementError(name, 'Invalid environment variable name: {}'
                                  .format(name.literal))
        value = self._expect(VALUE_KINDS, 'a value')
        return command.Env(name.literal, value.literal, *position)

    def _parse_copy(self, position):
        token = self._expect(TEXT_KINDS + (tokens.NUMBER,), 'text')
        return command.Copy(token.literal, *position)

    def _parse_paste(self, position):
        return command.Paste(*position)


def _illegal_message(token):
    if token.literal[0] in '"\'`':
        return 'Unterminated string'
    if token.literal[0] == '/':
        return 'Unterminated regular expression'
    if token.literal[0] == '{':
        return 'Unterminated JSON object'
    return 'Illegal character: {!r}'.format(token.literal)


def _duration(token):
    try:
        return tokens.parse_duration(token.literal)
    except ValueError:
        raise _StatementError(token, 'Invalid duration: {}'.format(token.literal)) from None


def _pattern(token):
    try:
        re.compile(token.literal)
    except re.error as exc:
        raise _StatementError(token, 'Invalid regular expression: {}'.format(exc)) from None
    return token.literal


def parse(text):
    """Return a tuple made of the commands of a tape and the list of errors"""
    parser = Parser(tokenize(text))
    commands = parser.parse()
    return commands, parser.errors


def expand_sources(commands, base_dir='.'):
    """Replace Source commands by the commands of the tapes they refer to

    Paths are relative to `base_dir`. Output commands of sourced tapes are
    ignored and sourced tapes may not themselves contain Source commands.
    Return a tuple made of the new list of commands and a list of errors."""
    expanded = []
    errors = []
    for cmd in commands:
        if not isinstance(cmd, command.Source):
            expanded.append(cmd)
            continue

        def source_error(message):
            errors.append(ParseError(cmd.line, cmd.column, len('Source'), message))

        path = os.path.join(base_dir, os.path.expanduser(cmd.path))
        try:
            with open(path, 'r', encoding='utf-8') as tape_file:
                text = tape_file.read()
        except FileNotFoundError:
            source_error('File {} not found'.format(cmd.path))
            continue
        except OSError as exc:
            source_error('Cannot read {}: {}'.format(cmd.path, exc.strerror))
            continue

        sourced_commands, sourced_errors = parse(text)
        for error in sourced_errors:
            source_error('{}:{}:{}: {}'.format(cmd.path, error.line, error.column,
                                               error.message))
        if sourced_errors:
            continue
        if any(isinstance(c, command.Source) for c in sourced_commands):
            source_error('Nested Source detected in {}'.format(cmd.path))
            continue
        if not sourced_commands:
            source_error('Source tape {} is empty'.format(cmd.path))
            continue

        expanded.extend(c for c in sourced_commands if not isinstance(c, command.Output))
    return expanded, errors


def parse_tape(text, base_dir='.'):
    """Parse a tape and expand its Source commands

    Return a tuple made of the commands and the list of errors"""
    commands, errors = parse(text)
    commands, source_errors = expand_sources(commands, base_dir)
    errors.extend(e for e in source_errors if e not in errors)
    errors.sort(key=lambda e: (e.line, e.column))
    return commands, errors


def format_error(tape, error):
    """Render a diagnostic with the line of the tape it refers to

      3 │ Sleep soon
          ^^^^^ Expected a duration after Sleep, got "soon"
    """
    lines = tape.split('\n')
    source_line = lines[error.line - 1].rstrip('\r') if 0 < error.line <= len(lines) else ''
    gutter = ' {:>2} │ '.format(error.line)
    underline = ' ' * (len(gutter) + error.column - 1) + '^' * error.length
    return '{}{}\n{} {}\n'.format(gutter, source_line, underline, error.message)
