"""Range 请求头解析测试。"""

import pytest

from app.packages.drive.core.exceptions import RangeNotSatisfiableError
from app.packages.drive.utils.http_range import parse_range


@pytest.mark.parametrize(
    "header, expected",
    [
        ("bytes=0-9", (0, 9)),
        ("bytes=5-", (5, 99)),
        ("bytes=-10", (90, 99)),
        ("bytes=-500", (0, 99)),
        ("bytes=90-500", (90, 99)),
        (" bytes = 1-2 ", (1, 2)),
    ],
)
def test_parse_single_range(header, expected):
    assert parse_range(header, 100) == expected


@pytest.mark.parametrize("header", [None, "", "items=0-1", "bytes=0-1,4-5", "bytes=a-b", "bytes=9-1", "bytes=5"])
def test_ignored_ranges_serve_full_body(header):
    assert parse_range(header, 100) is None


@pytest.mark.parametrize("header, total", [("bytes=100-", 100), ("bytes=-0", 100), ("bytes=-5", 0), ("bytes=0-", 0)])
def test_unsatisfiable_ranges(header, total):
    with pytest.raises(RangeNotSatisfiableError) as excinfo:
        parse_range(header, total)
    assert excinfo.value.status_code == 416
    assert excinfo.value.headers == {"Content-Range": f"bytes */{total}"}
