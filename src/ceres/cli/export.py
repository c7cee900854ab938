"""``ceres export``: dump stored datasets as JSON Lines, JSON or CSV."""

from __future__ import annotations

import csv
from datetime import datetime, timezone
from enum import StrEnum
import io
import json
from typing import Any

import typer

from ceres.sync import DatasetRecord

from .context import fail, require_context
from .db import open_store

__all__ = ["ExportFormat", "export_command", "export_record"]

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_CSV_FIELDS = (
    "original_id",
    "source_portal",
    "url",
    "title",
    "description",
    "indexed",
    "first_seen_at",
    "last_updated_at",
)


class ExportFormat(StrEnum):
    JSONL = "jsonl"
    JSON = "json"
    CSV = "csv"


def _timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(_TIMESTAMP_FORMAT)


def export_record(record: DatasetRecord) -> dict[str, Any]:
    """Return the JSON-ready form of ``record``; embeddings are left out.

    Example:
        >>> from datetime import datetime, timezone
        >>> seen = datetime(2025, 1, 1, tzinfo=timezone.utc)
        >>> record = DatasetRecord(
        ...     "https://p", "a", "https://p/dataset/a", "Air", None, None,
        ...     None, {}, seen, seen,
        ... )
        >>> export_record(record)["first_seen_at"]
        '2025-01-01T00:00:00Z'
    """

    return {
        "original_id": record.original_id,
        "source_portal": record.source_portal,
        "url": record.url,
        "title": record.title,
        "description": record.description,
        "metadata": dict(record.raw_metadata),
        "indexed": record.is_indexed,
        "first_seen_at": _timestamp(record.first_seen_at),
        "last_updated_at": _timestamp(record.last_updated_at),
    }


def _write_jsonl(records: list[DatasetRecord]) -> None:
    for record in records:
        typer.echo(json.dumps(export_record(record), ensure_ascii=False))


def _write_json(records: list[DatasetRecord]) -> None:
    payload = [export_record(record) for record in records]
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _write_csv(records: list[DatasetRecord]) -> None:
    buffer = io.StringIO()
    writer = csv.DictWriter(
        buffer,
        fieldnames=_CSV_FIELDS,
        extrasaction="ignore",
        lineterminator="\n",
    )
    writer.writeheader()
    for record in records:
        row = export_record(record)
        row["description"] = row["description"] or ""
        row["indexed"] = "true" if row["indexed"] else "false"
        writer.writerow(row)
    typer.echo(buffer.getvalue(), nl=False)


_WRITERS = {
    ExportFormat.JSONL: _write_jsonl,
    ExportFormat.JSON: _write_json,
    ExportFormat.CSV: _write_csv,
}


def export_command(
    ctx: typer.Context,
    output_format: ExportFormat = typer.Option(
        ExportFormat.JSONL,
        "--format",
        "-f",
        case_sensitive=False,
        help="Output format: jsonl (one object per line), json or csv.",
    ),
    portal: str | None = typer.Option(
        None,
        "--portal",
        "-p",
        help="Only export datasets from this portal URL.",
    ),
    limit: int | None = typer.Option(
        None,
        "--limit",
        "-n",
        min=1,
        help="Maximum number of datasets to export.",
    ),
) -> None:
    """Write stored datasets to stdout, including ones not yet embedded."""

    context = require_context(ctx)
    if not context.database_path.exists():
        fail(
            f"No database at {context.database_path}. Run `ceres harvest` first."
        )

    records = open_store(context).list_records(portal=portal, limit=limit)
    if not records:
        typer.echo("No datasets found to export.", err=True)
        return

    _WRITERS[output_format](records)
    context.logger.info(
        "export-complete",
        format=str(output_format),
        portal=portal,
        count=len(records),
    )
