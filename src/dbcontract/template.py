"""
SQL template parsing with a single-pass tokenizer.

Templates use two kinds of bind markers:

- ``:name`` - named bind site; names may be dotted (``:s.id``)
- ``?``     - positional bind site

Text inside single-quoted literals and double-quoted identifiers is copied
verbatim and never scanned for markers, and ``::`` (PostgreSQL cast) is
literal text. A template is parsed once per distinct text:

    SQL → Tokenize → ParsedTemplate (cached) → render(dialect) (cached)

Main entry points:
- `parse(sql)` - parse a template into fragments and bind tokens
- `ParsedTemplate.render(dialect)` - DB-API SQL for a dialect
- `ParsedTemplate.arguments(named, positional)` - values in placeholder order
"""
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any

from dbcontract.cache import cacheable
from dbcontract.exceptions import BindingError, TemplateError

__all__ = [
    'TokenType',
    'BindToken',
    'ParsedTemplate',
    'parse',
    'dialect_placeholder',
]


class TokenType(Enum):
    """Bind token kinds."""
    NAMED = auto()          # :name
    POSITIONAL = auto()     # ?


@dataclass(frozen=True, slots=True)
class BindToken:
    """One bind site in a template."""
    type: TokenType
    name: str | None
    index: int | None
    start: int
    end: int


_TOKENIZE = re.compile(r"""
    (?P<string>'(?:[^']|'')*')
    |(?P<ident>"(?:[^"]|"")*")
    |(?P<unterminated>['"])
    |(?P<cast>::)
    |(?P<named>:(?P<pname>[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*))
    |(?P<bad_named>:\d)
    |(?P<qmark>\?)
""", re.VERBOSE)


@dataclass(frozen=True, slots=True)
class ParsedTemplate:
    """Literal fragments interleaved with bind tokens.

    ``fragments`` always holds ``len(tokens) + 1`` items: the text before
    each token followed by the trailing text.
    """
    sql: str
    fragments: tuple[str, ...]
    tokens: tuple[BindToken, ...]
    names: tuple[str, ...]

    @property
    def is_positional(self) -> bool:
        return bool(self.tokens) and self.tokens[0].type is TokenType.POSITIONAL

    @property
    def positional_count(self) -> int:
        return sum(1 for t in self.tokens if t.type is TokenType.POSITIONAL)

    def render(self, dialect: str = 'sqlite') -> str:
        """Return the template as DB-API SQL for the dialect's paramstyle.
        """
        return _render(self, dialect)

    def missing(self, named: Mapping[str, Any], positional: Mapping[int, Any]) -> list[str]:
        """List bind sites with no value, as ``:name`` or ``?N`` labels."""
        missing = [f':{name}' for name in self.names if name not in named]
        missing.extend(
            f'?{token.index}' for token in self.tokens
            if token.type is TokenType.POSITIONAL and token.index not in positional)
        return missing

    def arguments(self, named: Mapping[str, Any], positional: Mapping[int, Any]) -> tuple:
        """Collect bound values in placeholder order.

        A repeated name contributes the same value at each of its sites.
        """
        missing = self.missing(named, positional)
        if missing:
            raise BindingError(
                f"Unable to execute, no value bound for {', '.join(missing)} in: {self.sql}")
        return tuple(
            named[token.name] if token.type is TokenType.NAMED else positional[token.index]
            for token in self.tokens)


def dialect_placeholder(dialect: str) -> str:
    """Return the DB-API positional placeholder for a dialect."""
    return '%s' if dialect == 'postgresql' else '?'


@cacheable('rendered_templates')
def _render(template: ParsedTemplate, dialect: str) -> str:
    placeholder = dialect_placeholder(dialect)
    fragments = template.fragments
    if placeholder == '%s':
        fragments = tuple(fragment.replace('%', '%%') for fragment in fragments)
    parts = [fragments[0]]
    for fragment in fragments[1:]:
        parts.append(placeholder)
        parts.append(fragment)
    return ''.join(parts)


def _tokenize(sql: str) -> ParsedTemplate:
    fragments: list[str] = []
    tokens: list[BindToken] = []
    names: dict[str, None] = {}
    buffer: list[str] = []
    last_end = 0
    positional_index = 0

    for match in _TOKENIZE.finditer(sql):
        start, end = match.span()
        buffer.append(sql[last_end:start])
        last_end = end

        if match.group('string') or match.group('ident') or match.group('cast'):
            buffer.append(match.group(0))
            continue

        if match.group('unterminated'):
            raise TemplateError(f'Unterminated quoted literal at position {start}',
                                template=sql, position=start)

        if match.group('bad_named'):
            raise TemplateError(f'Bind name must start with a letter or underscore '
                                f'at position {start}', template=sql, position=start)

        if match.group('named'):
            name = match.group('pname')
            token = BindToken(TokenType.NAMED, name, None, start, end)
            names.setdefault(name, None)
        else:
            token = BindToken(TokenType.POSITIONAL, None, positional_index, start, end)
            positional_index += 1

        if tokens and tokens[0].type is not token.type:
            raise TemplateError(f'Cannot mix named and positional bind markers '
                                f'(position {start})', template=sql, position=start)

        fragments.append(''.join(buffer))
        buffer = []
        tokens.append(token)

    buffer.append(sql[last_end:])
    fragments.append(''.join(buffer))

    return ParsedTemplate(sql=sql, fragments=tuple(fragments), tokens=tuple(tokens),
                          names=tuple(names))


def parse(sql: str) -> ParsedTemplate:
    """Parse a SQL template into literal fragments and bind tokens.

    Parameters
        sql: SQL template string

    Returns
        ParsedTemplate, shared by every caller passing the same text

    Raises
        TemplateError: on malformed markers or unterminated quotes
    """
    if not isinstance(sql, str):
        raise TemplateError(f'Template must be a string, got {type(sql).__name__}')
    return _parse(sql)


@cacheable('parsed_templates')
def _parse(sql: str) -> ParsedTemplate:
    return _tokenize(sql)
