"""Unit tests for SQL template parsing and rendering."""

import pytest
from dbcontract.exceptions import BindingError, TemplateError
from dbcontract.template import TokenType, parse

# =============================================================================
# Tokenizing
# =============================================================================


class TestParse:
    """Test class for template tokenizing."""

    def test_named_markers(self):
        template = parse('insert into something (id, name) values (:id, :name)')

        assert template.names == ('id', 'name')
        assert [t.type for t in template.tokens] == [TokenType.NAMED, TokenType.NAMED]
        assert template.fragments == ('insert into something (id, name) values (', ', ', ')')
        assert not template.is_positional

    def test_positional_markers(self):
        template = parse('select * from something where id = ? and name = ?')

        assert template.is_positional
        assert template.positional_count == 2
        assert [t.index for t in template.tokens] == [0, 1]
        assert template.names == ()

    def test_dotted_names(self):
        template = parse('insert into something (id, name) values (:s.id, :s.name)')
        assert template.names == ('s.id', 's.name')

    def test_repeated_name_registered_once(self):
        template = parse('select * from something where id = :id or parent = :id')

        assert template.names == ('id',)
        assert len(template.tokens) == 2
        assert template.arguments({'id': 7}, {}) == (7, 7)

    def test_quoted_literals_are_not_scanned(self):
        template = parse("select ':nope', \"col?\" from something where name = 'it''s ?' and id = :id")

        assert template.names == ('id',)
        assert "':nope'" in template.fragments[0]
        assert '"col?"' in template.fragments[0]
        assert "'it''s ?'" in template.fragments[0]

    def test_cast_is_literal(self):
        template = parse('select :value::text')

        assert template.names == ('value',)
        assert template.fragments == ('select ', '::text')

    def test_no_markers(self):
        template = parse('select 1')
        assert template.tokens == ()
        assert template.fragments == ('select 1',)


class TestParseErrors:
    """Test class for malformed templates."""

    def test_digit_after_colon(self):
        with pytest.raises(TemplateError) as exc:
            parse('select * from something where id = :1')
        assert exc.value.position == 35

    def test_unterminated_quote(self):
        with pytest.raises(TemplateError):
            parse("select * from something where name = 'Brian")

    def test_mixed_markers(self):
        with pytest.raises(TemplateError):
            parse('select * from something where id = :id and name = ?')

    def test_not_a_string(self):
        with pytest.raises(TemplateError):
            parse(None)


# =============================================================================
# Determinism and caching
# =============================================================================


def test_parse_is_deterministic():
    sql = "update something set name = :name where id = :id and note <> ':x'"
    first = parse(sql)
    second = parse(sql)

    assert first is second
    assert first.tokens == second.tokens


def test_reparse_after_cache_clear_is_identical():
    from dbcontract.cache import Cache

    sql = 'select * from something where id = ? and name = ?'
    first = parse(sql)
    Cache.get_instance().clear_all()
    second = parse(sql)

    assert first is not second
    assert first == second


# =============================================================================
# Rendering and arguments
# =============================================================================


def test_render_sqlite():
    template = parse('select * from something where id = :id')
    assert template.render('sqlite') == 'select * from something where id = ?'


def test_render_postgresql_escapes_percent():
    template = parse("select * from something where name like 'B%' and id = :id")
    assert template.render('postgresql') == "select * from something where name like 'B%%' and id = %s"


def test_arguments_in_placeholder_order():
    template = parse('insert into something (id, name) values (:id, :name)')
    assert template.arguments({'name': 'Brian', 'id': 1}, {}) == (1, 'Brian')


def test_missing_argument_raises():
    template = parse('insert into something (id, name) values (:id, :name)')
    with pytest.raises(BindingError, match=':name'):
        template.arguments({'id': 1}, {})


def test_missing_positional_argument_raises():
    template = parse('select * from something where id = ? and name = ?')
    with pytest.raises(BindingError, match=r'\?1'):
        template.arguments({}, {0: 1})
