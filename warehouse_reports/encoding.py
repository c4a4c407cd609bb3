from __future__ import annotations

import json
from typing import Iterator

from warehouse_reports.tabular import TabularResult

JSON_CONTENT_TYPE = "application/json"


def iter_encode(result: TabularResult) -> Iterator[bytes]:
    """
    Stream a result as a JSON array of row objects.

    Keys follow the column order of the result; values are the (already
    textual) cells. Yields one chunk per row so large reports never need a
    second full copy in memory.
    """
    yield b"["
    for i, row in enumerate(result.rows):
        obj = dict(zip(result.columns, row))
        chunk = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
        yield (chunk if i == 0 else "," + chunk).encode("utf-8")
    yield b"]"


def encode(result: TabularResult) -> bytes:
    return b"".join(iter_encode(result))
