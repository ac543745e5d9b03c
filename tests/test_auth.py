from __future__ import annotations

import pytest

from prompt_relay.core.auth import is_authorized


@pytest.mark.parametrize(
    ("provided", "expected", "authorized"),
    [
        ("s3cret", "s3cret", True),
        ("s3cret", "other", False),
        ("S3CRET", "s3cret", False),
        (None, "s3cret", False),
        ("", "s3cret", False),
        ("", "", False),
        (None, None, False),
        ("anything", "", False),
        ("секрет", "секрет", True),
    ],
)
def test_is_authorized(provided, expected, authorized):
    assert is_authorized(provided, expected) is authorized
