"""Serializers for export datasets: JSON, flattened CSV, per-domain CSV
tables and the archive README.

All functions are pure: the same dataset always yields the same text.
"""

from __future__ import annotations

import csv
import io
import json
from typing import Any

from pydantic import BaseModel

from compliance.models.enums import ExportFormat
from compliance.schemas.export import (
    ExportConsent,
    ExportDataset,
    ExportProfile,
    ExportSession,
    ExportSettings,
    ExportSubscription,
)

# Dataset sections in archive order
SECTIONS: tuple[str, ...] = ("profile", "sessions", "consents", "settings", "subscriptions", "analytics", "storage")

# Column sets for the tabular sections
_SECTION_MODELS: dict[str, type[BaseModel]] = {
    "profile": ExportProfile,
    "sessions": ExportSession,
    "consents": ExportConsent,
    "settings": ExportSettings,
    "subscriptions": ExportSubscription,
}

_FLAT_HEADER = ("section", "index", "field", "value")


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


def dataset_to_dict(dataset: ExportDataset) -> dict[str, Any]:
    """JSON-ready dict with uncollected sections dropped."""
    data = dataset.model_dump(mode="json")
    return {key: value for key, value in data.items() if value is not None}


# ── JSON ─────────────────────────────────────────────────────────────


def to_json(dataset: ExportDataset) -> str:
    return json.dumps(dataset_to_dict(dataset), indent=2, ensure_ascii=False)


def section_to_json(dataset: ExportDataset, section: str) -> str:
    return json.dumps(_plain(getattr(dataset, section)), indent=2, ensure_ascii=False)


# ── CSV ──────────────────────────────────────────────────────────────


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, ensure_ascii=False)
    return str(value)


def _flatten(prefix: str, value: Any, out: list[tuple[str, Any]]) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            _flatten(f"{prefix}.{key}" if prefix else key, item, out)
    elif isinstance(value, list) and value and all(isinstance(item, dict) for item in value):
        for i, item in enumerate(value):
            _flatten(f"{prefix}[{i}]", item, out)
    else:
        out.append((prefix, value))


def _write_table(header: list[str] | tuple[str, ...], rows: list[list[Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        writer.writerow([_cell(v) for v in row])
    return buffer.getvalue()


def to_csv(dataset: ExportDataset) -> str:
    """Whole dataset as one long-format table: section, index, field, value.

    Header row is always written, so an empty export is still valid CSV.
    """
    data = dataset_to_dict(dataset)
    rows: list[list[Any]] = [
        ["export", 0, "exported_at", data["exported_at"]],
        ["export", 0, "user_id", data["user_id"]],
        ["export", 0, "format", data["format"]],
    ]
    for section in SECTIONS:
        if section not in data:
            continue
        value = data[section]
        records = value if isinstance(value, list) else [value]
        for index, record in enumerate(records):
            pairs: list[tuple[str, Any]] = []
            _flatten("", record, pairs)
            rows.extend([section, index, field, item] for field, item in pairs)
    return _write_table(_FLAT_HEADER, rows)


def section_to_csv(dataset: ExportDataset, section: str) -> str:
    """One section as a table with a column per field.

    Nested sections (analytics, storage) fall back to the long format.
    """
    value = _plain(getattr(dataset, section))
    if section in ("analytics", "storage"):
        pairs: list[tuple[str, Any]] = []
        _flatten("", value or {}, pairs)
        return _write_table(("field", "value"), [[field, item] for field, item in pairs])

    records = value if isinstance(value, list) else ([value] if value else [])
    fields = list(_SECTION_MODELS[section].model_fields)
    return _write_table(fields, [[record.get(f) for f in fields] for record in records])


# ── README ───────────────────────────────────────────────────────────


def build_readme(dataset: ExportDataset, fmt: str) -> str:
    data = dataset_to_dict(dataset)
    included = [s for s in SECTIONS if s in data]
    lines = [
        "PERSONAL DATA EXPORT",
        "====================",
        "",
        f"Exported at: {data['exported_at']}",
        f"User ID: {dataset.user_id}",
        f"Format: {fmt.upper()}",
        f"Records: {dataset.record_count}",
        "",
        "Contents",
        "--------",
    ]
    lines.extend(f"- {section}.{fmt}" for section in included)
    if dataset.storage and dataset.storage.profile_image:
        lines.append("- media/ (profile image)")
    lines.extend([
        "",
        "Sections that could not be collected are left out of this archive.",
        "Media files other than the profile image are listed by name and size only.",
        "",
        "You may request correction or deletion of this data at any time",
        "from the account settings of the app.",
        "",
    ])
    return "\n".join(lines)


def transform(dataset: ExportDataset, fmt: str) -> str:
    """Serialize a dataset to `fmt` ("json" or "csv")."""
    if fmt == ExportFormat.JSON.value:
        return to_json(dataset)
    if fmt == ExportFormat.CSV.value:
        return to_csv(dataset)
    msg = f"Unsupported export format: {fmt}"
    raise ValueError(msg)


def section_text(dataset: ExportDataset, section: str, fmt: str) -> str:
    if fmt == ExportFormat.CSV.value:
        return section_to_csv(dataset, section)
    return section_to_json(dataset, section)
