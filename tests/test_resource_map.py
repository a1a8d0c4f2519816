import pytest

from platsched.gpu.resource_map import (
    ResourceError,
    ResourceInputError,
    ResourceMap,
    ResourceOverflowError,
)

INT64_MAX = 9223372036854775807
KEY = "foo"


def test_division_sequence():
    rm = ResourceMap({"foo": 2})
    with pytest.raises(ResourceError):
        rm.divide(-1)
    assert rm["foo"] == 2
    rm.divide(1)
    assert rm["foo"] == 2
    rm.divide(2)
    assert rm["foo"] == 1


def test_add_sequence():
    rm = ResourceMap({KEY: 2})
    rm.add(KEY, INT64_MAX - 2)
    assert rm[KEY] == INT64_MAX
    with pytest.raises(ResourceOverflowError):
        rm.add(KEY, 1)
    assert rm[KEY] == INT64_MAX


def test_add_negative_is_input_error():
    rm = ResourceMap({KEY: 2})
    with pytest.raises(ResourceInputError):
        rm.add(KEY, -1)
    assert rm[KEY] == 2


def test_subtract_sequence():
    rm = ResourceMap({KEY: 2})
    with pytest.raises(ResourceError):
        rm.subtract("bar", 2)
    assert rm[KEY] == 2
    rm.subtract(KEY, 1)
    assert rm[KEY] == 1
    rm.subtract(KEY, 2)
    assert rm[KEY] == 0


def test_add_rm():
    rm = ResourceMap({KEY: 2, "foo2": 3})
    rm2 = ResourceMap({KEY: 4, "foo2": 5, "foo3": INT64_MAX})
    rm3 = ResourceMap({KEY: 2, "foo2": 3, "foo3": INT64_MAX})

    with pytest.raises(ResourceOverflowError):
        rm2.add_rm(rm3)
    assert rm2[KEY] == 4
    assert rm2["foo2"] == 5
    assert rm2["foo3"] == INT64_MAX

    rm.add_rm(rm2)
    assert rm[KEY] == 6
    assert rm["foo2"] == 8
    assert rm["foo3"] == INT64_MAX


def test_subtract_rm():
    rm = ResourceMap({"unknown": 2, "foo2": 3})
    rm2 = ResourceMap({KEY: 4, "foo2": 5, "foo3": INT64_MAX})
    rm3 = ResourceMap({KEY: 2, "foo2": 3, "foo3": INT64_MAX})

    with pytest.raises(ResourceError):
        rm2.subtract_rm(rm)
    assert rm2[KEY] == 4
    assert rm2["foo2"] == 5
    assert rm2["foo3"] == INT64_MAX

    rm2.subtract_rm(rm3)
    assert rm2[KEY] == 2
    assert rm2["foo2"] == 2
    assert rm2["foo3"] == 0


def test_copy_is_independent():
    rm = ResourceMap({KEY: 2})
    duplicate = rm.copy()
    duplicate.add(KEY, 3)
    assert rm[KEY] == 2
    assert duplicate[KEY] == 5
    assert isinstance(duplicate, ResourceMap)