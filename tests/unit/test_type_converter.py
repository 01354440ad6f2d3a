"""Unit tests for bind value conversion and annotation helpers."""

import datetime
from collections.abc import Iterator
from typing import Annotated, Any, Optional

import numpy as np
import pandas as pd
import pytest
from dbcontract.binding import Bind
from dbcontract.types import TypeConverter, element_type, is_iterable_type
from dbcontract.types import is_scalar_type, strip_annotated, unwrap_optional


class TestConvertValue:
    """Test class for bind value conversion."""

    @pytest.mark.parametrize('value', [float('nan'), float('inf'), np.float64('nan'),
                                       pd.NaT, pd.NA, None, np.datetime64('NaT')])
    def test_missing_values_become_none(self, value):
        assert TypeConverter.convert_value(value) is None

    def test_numpy_scalars(self):
        assert type(TypeConverter.convert_value(np.int32(5))) is int
        assert type(TypeConverter.convert_value(np.float32(1.5))) is float
        assert TypeConverter.convert_value(np.bool_(True)) is True

    def test_datetimes(self):
        expected = datetime.datetime(2025, 1, 2, 3, 4, 5)
        assert TypeConverter.convert_value(np.datetime64('2025-01-02T03:04:05')) == expected
        converted = TypeConverter.convert_value(pd.Timestamp(expected))
        assert type(converted) is datetime.datetime
        assert converted == expected

    def test_plain_values_pass_through(self):
        value = datetime.date(2025, 1, 1)
        assert TypeConverter.convert_value(value) is value
        assert TypeConverter.convert_value('Brian') == 'Brian'

    def test_convert_params(self):
        assert TypeConverter.convert_params({'a': np.int64(1)}) == {'a': 1}
        assert TypeConverter.convert_params((np.int64(1), float('nan'))) == (1, None)


class TestAnnotations:
    """Test class for annotation helpers."""

    def test_strip_annotated(self):
        marker = Bind('x')
        assert strip_annotated(Annotated[int, marker]) == (int, (marker,))
        assert strip_annotated(int) == (int, ())

    def test_unwrap_optional(self):
        assert unwrap_optional(str | None) == (str, True)
        assert unwrap_optional(Optional[int]) == (int, True)
        assert unwrap_optional(int | str) == (int | str, False)

    def test_element_type(self):
        assert element_type(list[int]) is int
        assert element_type(list) is Any

    @pytest.mark.parametrize(('tp', 'expected'), [
        (list[int], True),
        (tuple[int, ...], True),
        (Iterator[str], True),
        (set, True),
        (str, False),
        (bytes, False),
        (dict[str, int], False),
        (int, False),
        (Any, False),
    ])
    def test_is_iterable_type(self, tp, expected):
        assert is_iterable_type(tp) is expected

    def test_is_scalar_type(self):
        assert is_scalar_type(int)
        assert is_scalar_type(Any)
        assert is_scalar_type(datetime.date)
        assert not is_scalar_type(list)
