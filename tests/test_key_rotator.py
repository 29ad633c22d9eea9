import pytest

from core.exceptions import ChatValidationError, NoCredentialsError
from core.key_rotator import KeyRotator, mask


@pytest.mark.parametrize("size", [1, 2, 5])
def test_full_cycle_visits_every_key_once(size):
    keys = [f"key-{i}" for i in range(size)]
    rotator = KeyRotator(keys)

    seen = [rotator.next() for _ in range(size)]

    assert sorted(seen) == sorted(keys)
    assert seen == keys
    # N+1 wraps back to the first key
    assert rotator.next() == keys[0]


def test_empty_pool_is_refused():
    with pytest.raises(NoCredentialsError):
        KeyRotator([])
    with pytest.raises(NoCredentialsError):
        KeyRotator(["", "  "])


def test_blank_and_duplicate_keys_are_dropped():
    rotator = KeyRotator(["a", " a ", "", "b"])
    assert rotator.keys == ["a", "b"]


def test_add_key_joins_rotation():
    rotator = KeyRotator(["a"])
    assert rotator.add("b") is True
    assert rotator.add("b") is False
    assert [rotator.next() for _ in range(4)] == ["a", "b", "a", "b"]


def test_remove_key_keeps_cursor_in_range():
    rotator = KeyRotator(["a", "b", "c"])
    rotator.next()
    rotator.next()  # cursor now points at "c"

    assert rotator.remove("c") is True
    assert rotator.next() == "a"
    assert rotator.remove("missing") is False


def test_remove_before_cursor_does_not_skip_a_key():
    rotator = KeyRotator(["a", "b", "c"])
    rotator.next()
    rotator.next()  # cursor at "c"

    rotator.remove("a")

    assert rotator.next() == "c"
    assert rotator.next() == "b"


def test_last_key_cannot_be_removed():
    rotator = KeyRotator(["only"])
    with pytest.raises(ChatValidationError) as exc_info:
        rotator.remove("only")
    assert exc_info.value.code == "LAST_API_KEY"
    assert len(rotator) == 1


def test_mask_hides_middle_of_key():
    assert mask("AIzaSyExampleKey1234") == "AIza…1234"
    assert mask("short") == "*****"
