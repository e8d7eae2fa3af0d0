"""Rendering of API responses as raw JSON, YAML, tables, or detail views."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Mapping, Optional, Sequence, TextIO, Tuple

import yaml
from rich.cells import cell_len
from rich.console import Console
from rich.segment import SegmentLines
from rich.table import Table
from rich.text import Text


OUTPUT_FORMATS = ("table", "json", "yaml")


def stdout_console() -> Console:
    return Console(highlight=False)


class RenderError(Exception):
    """Raised when a response body cannot be shown in the requested view."""


def display_value(value: Any) -> str:
    """Render a decoded JSON value as text; strings pass through unchanged."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def string_field(record: Mapping[str, Any], key: str) -> str:
    """
    Extract ``key`` from ``record`` as display text.

    Missing keys yield an empty string, strings are returned verbatim and any
    other JSON value is rendered compactly (``3``, ``true``, ``{"a":1}``).
    """
    if key not in record:
        return ""
    return display_value(record[key])


def format_list(value: Any) -> str:
    """Join a list of values with commas; other values are shown as-is."""
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(display_value(item) for item in value)
    return display_value(value)


@dataclass(frozen=True)
class Column:
    """One ``(header, field)`` pair of a projection map."""

    header: str
    field: str
    formatter: Optional[Callable[[Any], str]] = None

    def extract(self, record: Mapping[str, Any]) -> str:
        if self.formatter is None:
            return string_field(record, self.field)
        return self.formatter(record.get(self.field))


@dataclass(frozen=True)
class TableSpec:
    """Ordered projection of JSON objects onto table columns."""

    columns: Tuple[Column, ...]
    empty_message: str = "(none)"

    @property
    def headers(self) -> List[str]:
        return [column.header for column in self.columns]

    def project(self, record: Mapping[str, Any]) -> List[str]:
        return [column.extract(record) for column in self.columns]


def _spec(empty_message: str, *pairs: Tuple[str, str]) -> TableSpec:
    return TableSpec(tuple(Column(header, name) for header, name in pairs), empty_message)


AGENTS_TABLE = _spec(
    "No agents found.",
    ("NAME", "name"),
    ("STATUS", "status"),
    ("IMAGE", "image"),
)
TOOLS_TABLE = _spec(
    "No tools found.",
    ("NAME", "name"),
    ("TOPOLOGY", "topology"),
    ("BASE_URL", "base_url"),
    ("ACCESS", "access_mode"),
    ("STATUS", "status"),
)
MODELS_TABLE = TableSpec(
    (
        Column("NAME", "name"),
        Column("PROVIDER", "provider"),
        Column("MODELS", "models", formatter=format_list),
        Column("STATUS", "status"),
    ),
    "No model providers found.",
)
RUNS_TABLE = _spec(
    "No runs found.",
    ("ID", "id"),
    ("AGENT", "agent"),
    ("STATUS", "status"),
    ("CREATED", "created_at"),
)
EVENTS_TABLE = _spec(
    "No events found.",
    ("SEQ", "sequence"),
    ("TYPE", "type"),
    ("MESSAGE", "message"),
    ("TIMESTAMP", "timestamp"),
)
APPROVALS_TABLE = _spec(
    "No access requests found.",
    ("ID", "id"),
    ("AGENT", "agent"),
    ("TOOL", "tool"),
    ("STATUS", "status"),
    ("CREATED", "created_at"),
)
MODEL_USAGES_TABLE = _spec(
    "  (none)",
    ("ROLE", "role"),
    ("MODEL", "variable_name"),
    ("FILE", "file"),
    ("LINE", "line"),
)


def decode_payload(payload: bytes) -> Any:
    try:
        return json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise RenderError(f"failed to parse response: {exc}") from exc


def decode_object(payload: bytes) -> Mapping[str, Any]:
    """Decode a body that must hold a single JSON object; ``null`` is empty."""
    data = decode_payload(payload)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise RenderError("failed to parse response: expected a JSON object")
    return data


def decode_records(payload: bytes) -> List[Mapping[str, Any]]:
    """Decode a body holding an array of objects, promoting a lone object."""
    data = decode_payload(payload)
    if data is None:
        return []
    if isinstance(data, dict):
        return [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise RenderError("failed to parse response: expected an array of JSON objects")
    return data


def render_raw(payload: bytes, stream: Optional[TextIO] = None) -> None:
    """
    Write the response body exactly as received.

    Bytes go straight to the stream's binary buffer when it has one, so
    non UTF-8 bodies are not altered. Text-only streams get a lenient decode.
    """
    stream = stream or sys.stdout
    buffer = getattr(stream, "buffer", None)
    if buffer is None:
        stream.write(payload.decode("utf-8", errors="replace"))
        stream.write("\n")
        return
    stream.flush()
    buffer.write(payload + b"\n")
    buffer.flush()


def render_yaml(payload: bytes, stream: Optional[TextIO] = None) -> None:
    stream = stream or sys.stdout
    yaml.safe_dump(decode_payload(payload), stream, sort_keys=False, allow_unicode=True)


_COLUMN_GAP = 3


def build_table(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> Table:
    table = Table(
        box=None,
        show_header=True,
        header_style="bold",
        show_edge=False,
        pad_edge=False,
        padding=(0, _COLUMN_GAP, 0, 0),
    )
    for header in headers:
        table.add_column(header, no_wrap=True, overflow="ignore")
    for row in rows:
        table.add_row(*[Text(cell) for cell in row])
    return table


def _text_width(value: str) -> int:
    return max((cell_len(line) for line in value.splitlines()), default=0)


def natural_width(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> int:
    """Width a table needs so that no cell is cropped."""
    widths = [_text_width(header) for header in headers]
    for row in rows:
        for index, cell in enumerate(row):
            widths[index] = max(widths[index], _text_width(cell))
    return sum(widths) + _COLUMN_GAP * max(len(widths) - 1, 0)


def print_records(
    records: Sequence[Mapping[str, Any]],
    spec: TableSpec,
    console: Optional[Console] = None,
) -> None:
    """
    Print ``records`` as a table, or the table's empty message when there are none.

    The table is laid out at its natural width even when that exceeds the
    console (pipes default to 80 columns); long lines are left for the
    terminal to wrap.
    """
    console = console or stdout_console()
    if not records:
        console.print(Text(spec.empty_message))
        return
    rows = [spec.project(record) for record in records]
    table = build_table(spec.headers, rows)
    width = max(console.width, natural_width(spec.headers, rows))
    lines = console.render_lines(table, console.options.update_width(width), pad=False)
    console.print(SegmentLines(lines, new_lines=True), soft_wrap=True)


def render_table(payload: bytes, spec: TableSpec, console: Optional[Console] = None) -> None:
    """Decode ``payload`` and print it as a borderless table."""
    print_records(decode_records(payload), spec, console)


def render_detail(
    record: Mapping[str, Any],
    fields: Sequence[Tuple[str, str]],
    optional: Sequence[Tuple[str, str]] = (),
    console: Optional[Console] = None,
    formatters: Optional[Mapping[str, Callable[[Any], str]]] = None,
) -> None:
    """
    Print ``Label: value`` lines for a single object.

    ``fields`` are always printed; ``optional`` ones only when the key is
    present in the record.
    """
    console = console or stdout_console()
    formatters = formatters or {}
    lines = list(fields) + [(label, key) for label, key in optional if key in record]
    width = max((len(label) for label, _ in lines), default=0) + 1
    for label, key in lines:
        formatter = formatters.get(key)
        value = formatter(record.get(key)) if formatter else string_field(record, key)
        console.print(Text(f"{label + ':':<{width + 1}}{value}"), soft_wrap=True)


def render_list_section(title: str, value: Any, console: Optional[Console] = None) -> None:
    console = console or stdout_console()
    console.print(Text(f"\n{title}:"), soft_wrap=True)
    if not isinstance(value, list) or not value:
        console.print(Text("  (none)"))
        return
    for item in value:
        console.print(Text(f"  - {display_value(item)}"), soft_wrap=True)


def report_field(record: Mapping[str, Any], label: str, key: str, console: Optional[Console] = None) -> None:
    """Print ``label`` followed by the value when ``key`` is present in ``record``."""
    if key not in record:
        return
    console = console or stdout_console()
    console.print(Text(f"{label}{display_value(record[key])}"), soft_wrap=True)
