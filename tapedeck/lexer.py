"""Lexer of the tape language

The lexer turns the text of a tape into a list of tokens terminated by an EOF
token. It never fails: characters which do not start a valid token produce
ILLEGAL tokens so that the parser can report them with their position and
keep going.
"""

from tapedeck import tokens
from tapedeck.tokens import Token

WORD_PUNCTUATION = set('.-_/~:')
STRING_ESCAPES = {
    '"': '"',
    '\\': '\\',
    'n': '\n',
    't': '\t',
}
PUNCTUATION = set('@+%')
# Commands taking a path, after which a leading "/" starts an absolute path
# rather than a regular expression
PATH_COMMANDS = {'Output', 'Screenshot', 'Source'}


def _is_word_char(char):
    return char.isalnum() or char in WORD_PUNCTUATION


class Lexer:
    def __init__(self, text):
        self.text = text
        self.position = 0
        self.line = 1
        self.column = 1
        self.previous = None

    def _peek(self, offset=0):
        index = self.position + offset
        if index < len(self.text):
            return self.text[index]
        return ''

    def _advance(self):
        char = self.text[self.position]
        self.position += 1
        if char == '\n':
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        return char

    def _skip_whitespace_and_comments(self):
        while self.position < len(self.text):
            char = self._peek()
            if char in ' \t\r\n':
                self._advance()
            elif char == '#':
                while self.position < len(self.text) and self._peek() != '\n':
                    self._advance()
            else:
                break

    def tokens(self):
        result = []
        while True:
            token = self.next_token()
            result.append(token)
            self.previous = token
            if token.kind == tokens.EOF:
                return result

    def next_token(self):
        self._skip_whitespace_and_comments()
        line, column = self.line, self.column
        char = self._peek()

        if not char:
            return Token(tokens.EOF, '', line, column)
        if char in PUNCTUATION:
            self._advance()
            return Token(tokens.PUNCT, char, line, column)
        if char == '"':
            return self._read_string(line, column, escapes=True)
        if char in '\'`':
            return self._read_string(line, column, escapes=False)
        if char == '/':
            if self._after_path_command(line):
                return Token(tokens.IDENT, self._read_word(), line, column)
            return self._read_regex(line, column)
        if char == '{':
            return self._read_json(line, column)
        if char.isdigit() or (char == '.' and self._peek(1).isdigit()):
            return self._read_number(line, column)
        if _is_word_char(char):
            word = self._read_word()
            kind = tokens.KEYWORD if word in tokens.KEYWORDS else tokens.IDENT
            return Token(kind, word, line, column)

        self._advance()
        return Token(tokens.ILLEGAL, char, line, column)

    def _after_path_command(self, line):
        previous = self.previous
        return (previous is not None and previous.line == line
                and previous.is_keyword(*PATH_COMMANDS))

    def _read_word(self):
        start = self.position
        while _is_word_char(self._peek()):
            self._advance()
        return self.text[start:self.position]

    def _read_number(self, line, column):
        start = self.position
        while self._peek().isdigit():
            self._advance()
        if self._peek() == '.' and self._peek(1).isdigit():
            self._advance()
            while self._peek().isdigit():
                self._advance()
        number = self.text[start:self.position]

        if not _is_word_char(self._peek()):
            return Token(tokens.NUMBER, number, line, column)

        # Either a duration such as "500ms" or a word starting with digits
        # such as "2024demo.gif"
        suffix = self._read_word()
        if suffix in tokens.DURATION_UNITS:
            return Token(tokens.DURATION, number + suffix, line, column)
        return Token(tokens.IDENT, number + suffix, line, column)

    def _read_string(self, line, column, escapes):
        quote = self._advance()
        chars = []
        while True:
            char = self._peek()
            if not char or char == '\n':
                return Token(tokens.ILLEGAL, quote + ''.join(chars), line, column)
            self._advance()
            if char == quote:
                return Token(tokens.STRING, ''.join(chars), line, column)
            if escapes and char == '\\' and self._peek():
                escaped = self._advance()
                chars.append(STRING_ESCAPES.get(escaped, '\\' + escaped))
            else:
                chars.append(char)

    def _read_regex(self, line, column):
        self._advance()
        chars = []
        while True:
            char = self._peek()
            if not char or char == '\n':
                return Token(tokens.ILLEGAL, '/' + ''.join(chars), line, column)
            self._advance()
            if char == '/':
                return Token(tokens.REGEX, ''.join(chars), line, column)
            if char == '\\' and self._peek() == '/':
                chars.append(self._advance())
            else:
                chars.append(char)

    def _read_json(self, line, column):
        start = self.position
        depth = 0
        in_string = False
        while self._peek():
            char = self._advance()
            if in_string:
                if char == '\\' and self._peek():
                    self._advance()
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == '{':
                depth += 1
            elif char == '}':
                depth -= 1
                if depth == 0:
                    return Token(tokens.JSON, self.text[start:self.position],
                                 line, column)
        return Token(tokens.ILLEGAL, self.text[start:self.position], line, column)


def tokenize(text):
    """Return the list of tokens of a tape, terminated by an EOF token"""
    return Lexer(text).tokens()
