"""
JSON exporter for hemogen.

Exports records as plain JSON for inspection (not the wire format; see
the FHIR exporter for that).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from hemogen.models import LabRecord


def export_json(
    records: LabRecord | list[LabRecord],
    output_path: Path | None = None,
    indent: int = 2,
    include_nulls: bool = False,
) -> str:
    """
    Export one record or a list of records to JSON.

    Args:
        records: The record(s) to export
        output_path: Optional path to write the JSON file
        indent: JSON indentation level
        include_nulls: Whether to include null values in output

    Returns:
        JSON string representation
    """
    if isinstance(records, LabRecord):
        data: Any = records.model_dump(mode="json", exclude_none=not include_nulls)
    else:
        data = [r.model_dump(mode="json", exclude_none=not include_nulls) for r in records]

    json_str = json.dumps(data, indent=indent)

    if output_path:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json_str)

    return json_str


def export_json_summary(record: LabRecord) -> dict[str, Any]:
    """
    Export a summary of the record (useful for listings).
    """
    return {
        "id": record.id,
        "subject_id": record.subject_id,
        "location": record.location,
        "collected_at": record.collected_at.isoformat(),
        "category": record.category.value,
        "white_blood_cells": record.white_blood_cells,
        "neutrophils": record.neutrophils,
        "neutrophils_band_form": record.neutrophils_band_form,
        "sent_to_api": record.sent_to_api,
        "api_response_status": record.api_response_status,
    }
