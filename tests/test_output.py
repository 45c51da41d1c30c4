import pytest

from coreason_coderunner.utils.output import BoundedBuffer


def test_under_limit_keeps_everything() -> None:
    buffer = BoundedBuffer(limit=16)
    buffer.write(b"hello ")
    buffer.write(None)
    buffer.write(b"world")

    assert buffer.getvalue() == b"hello world"
    assert len(buffer) == 11
    assert not buffer.truncated


def test_over_limit_truncates_and_counts() -> None:
    buffer = BoundedBuffer(limit=8)
    buffer.write(b"12345")
    buffer.write(b"67890")
    buffer.write(b"abc")

    assert buffer.getvalue() == b"12345678"
    assert buffer.truncated
    assert buffer.dropped == 5


def test_exact_limit_is_not_truncation() -> None:
    buffer = BoundedBuffer(limit=4)
    buffer.write(b"abcd")
    assert buffer.getvalue() == b"abcd"
    assert not buffer.truncated


def test_limit_must_be_positive() -> None:
    with pytest.raises(ValueError):
        BoundedBuffer(limit=0)
