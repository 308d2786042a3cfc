from __future__ import annotations

import json
from typing import Any, Iterable, Mapping, Sequence


def print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, sort_keys=True))


def format_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    rows_list = [["" if c is None else str(c) for c in r] for r in rows]
    widths = [len(h) for h in headers]
    for r in rows_list:
        for i, cell in enumerate(r[: len(widths)]):
            widths[i] = max(widths[i], len(cell))

    def fmt_row(cols: Sequence[str]) -> str:
        padded = [c.ljust(widths[i]) if i < len(widths) else c for i, c in enumerate(cols)]
        return "  ".join(padded).rstrip()

    out = [fmt_row(list(headers)), fmt_row(["-" * w for w in widths])]
    out.extend(fmt_row(r) for r in rows_list)
    return "\n".join(out)


def format_kv(items: Mapping[str, Any]) -> str:
    """Render a flat mapping as aligned `key: value` lines."""
    if not items:
        return ""
    width = max(len(k) for k in items)
    return "\n".join(f"{k.ljust(width)}  {v}" for k, v in items.items())
