"""
FHIR R4 Exporter for hemogen.

Converts a LabRecord into a self-contained FHIR R4 collection Bundle:
Patient, Encounter, and one CBC panel Observation whose components carry
the individual counts the downstream detector reads.
Reference: https://www.hl7.org/fhir/R4/
"""

from __future__ import annotations

import json
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any

from hemogen.models import LabRecord


LOINC_SYSTEM = "http://loinc.org"
UCUM_SYSTEM = "http://unitsofmeasure.org"

CBC_PANEL_CODE = "58410-2"
CBC_PANEL_DISPLAY = "Complete blood count (CBC) panel - Blood by Automated count"

# field -> (LOINC code, display, unit, scale to unit, reference low, reference high)
CBC_COMPONENTS: dict[str, tuple[str, str, str, float, float, float]] = {
    "white_blood_cells": ("6690-2", "Leukocytes [#/volume] in Blood", "cells/uL", 1, 4000.0, 11000.0),
    "neutrophils": ("751-8", "Neutrophils [#/volume] in Blood", "cells/uL", 1, 2000.0, 7500.0),
    "neutrophils_band_form": ("764-1", "Neutrophils.band form [#/volume] in Blood", "cells/uL", 1, 0.0, 500.0),
    "red_blood_cells": ("789-8", "Erythrocytes [#/volume] in Blood", "cells/uL", 1_000_000, 4500000.0, 5500000.0),
    "hemoglobin": ("718-7", "Hemoglobin [Mass/volume] in Blood", "g/dL", 1, 13.0, 17.0),
    "hematocrit": ("4544-3", "Hematocrit [Volume Fraction] of Blood", "%", 1, 40.0, 50.0),
    "platelets": ("777-3", "Platelets [#/volume] in Blood", "cells/uL", 1000, 150000.0, 400000.0),
}

ENCOUNTER_DURATION = timedelta(minutes=30)


def format_date(d: date | datetime | None) -> str | None:
    """Format a date for FHIR."""
    if d is None:
        return None
    return d.isoformat()


class FHIRExporter:
    """
    Exports LabRecord data to FHIR R4 Bundle format.
    """

    def __init__(self, country: str = "BRA"):
        self.country = country

    def export(self, record: LabRecord) -> dict[str, Any]:
        """
        Export a record to a FHIR R4 Bundle.

        Returns a dictionary that can be serialized to JSON.
        """
        patient_id = f"patient-{record.subject_id}"
        encounter_id = f"encounter-{record.subject_id}"
        observation_id = f"cbc-{record.subject_id}"

        patient_ref = f"urn:uuid:{patient_id}"
        encounter_ref = f"urn:uuid:{encounter_id}"

        entries = [
            self._bundle_entry(self._create_patient_resource(record, patient_id), patient_ref),
            self._bundle_entry(self._create_encounter_resource(record, encounter_id, patient_ref), encounter_ref),
            self._bundle_entry(
                self._create_cbc_observation(record, observation_id, patient_ref, encounter_ref),
                f"urn:uuid:observation-{record.subject_id}",
            ),
        ]

        return {
            "resourceType": "Bundle",
            "id": f"bundle-{record.subject_id}",
            "type": "collection",
            "timestamp": format_date(record.collected_at),
            "entry": entries,
        }

    def export_json(self, record: LabRecord, pretty: bool = False) -> str:
        """Export to JSON string. Compact for the wire, indented for debugging."""
        bundle = self.export(record)
        if pretty:
            return json.dumps(bundle, indent=2, default=str)
        return json.dumps(bundle, separators=(",", ":"), default=str)

    def _bundle_entry(self, resource: dict, full_url: str) -> dict:
        """Wrap a resource in a bundle entry."""
        return {
            "fullUrl": full_url,
            "resource": resource,
        }

    def _create_patient_resource(self, record: LabRecord, patient_id: str) -> dict:
        """Create FHIR Patient resource."""
        address = {
            "use": "home",
            "city": record.city,
            "country": self.country,
        }
        if record.region:
            address["state"] = record.region

        return {
            "resourceType": "Patient",
            "id": patient_id,
            "identifier": [{
                "system": "urn:hemogen:subject",
                "value": record.subject_id,
            }],
            "name": [{
                "use": "official",
                "family": record.subject_name,
            }],
            "address": [address],
        }

    def _create_encounter_resource(self, record: LabRecord, encounter_id: str, patient_ref: str) -> dict:
        """Create FHIR Encounter resource (clinical context of the draw)."""
        return {
            "resourceType": "Encounter",
            "id": encounter_id,
            "status": "finished",
            "class": {
                "system": "http://terminology.hl7.org/CodeSystem/v3-ActCode",
                "code": "AMB",
                "display": "ambulatory",
            },
            "subject": {"reference": patient_ref},
            "period": {
                "start": format_date(record.collected_at),
                "end": format_date(record.collected_at + ENCOUNTER_DURATION),
            },
        }

    def _create_cbc_observation(
        self,
        record: LabRecord,
        observation_id: str,
        patient_ref: str,
        encounter_ref: str,
    ) -> dict:
        """
        Create the CBC panel Observation.

        The detector consolidates values from ``component[]``, so every
        count lives there rather than in separate Observations.
        """
        components = []
        for field_name, coding in CBC_COMPONENTS.items():
            value = getattr(record, field_name)
            if value is None:
                continue
            code, display, unit, scale, ref_low, ref_high = coding
            components.append(self._component(code, display, value * scale, unit, ref_low, ref_high))

        return {
            "resourceType": "Observation",
            "id": observation_id,
            "status": "final",
            "category": [{
                "coding": [{
                    "system": "http://terminology.hl7.org/CodeSystem/observation-category",
                    "code": "laboratory",
                    "display": "Laboratory",
                }],
            }],
            "code": {
                "coding": [{
                    "system": LOINC_SYSTEM,
                    "code": CBC_PANEL_CODE,
                    "display": CBC_PANEL_DISPLAY,
                }],
                "text": "Complete Blood Count",
            },
            "subject": {"reference": patient_ref},
            "encounter": {"reference": encounter_ref},
            "effectiveDateTime": format_date(record.collected_at),
            "component": components,
        }

    def _component(
        self,
        code: str,
        display: str,
        value: float,
        unit: str,
        ref_low: float | None,
        ref_high: float | None,
    ) -> dict:
        """One Observation component with a UCUM quantity and reference range."""
        component = {
            "code": {
                "coding": [{
                    "system": LOINC_SYSTEM,
                    "code": code,
                    "display": display,
                }],
            },
            "valueQuantity": {
                "value": round(value, 2),
                "unit": unit,
                "system": UCUM_SYSTEM,
                "code": unit,
            },
        }

        reference_range = {}
        if ref_low is not None:
            reference_range["low"] = {"value": ref_low, "unit": unit}
        if ref_high is not None:
            reference_range["high"] = {"value": ref_high, "unit": unit}
        if reference_range:
            component["referenceRange"] = [reference_range]

        return component


def export_to_fhir(record: LabRecord, output_path: Path | None = None) -> dict[str, Any]:
    """
    Convenience function to export a record to FHIR.

    Args:
        record: The record to export
        output_path: Optional path to write the JSON file

    Returns:
        FHIR Bundle as a dictionary
    """
    exporter = FHIRExporter()
    bundle = exporter.export(record)

    if output_path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(bundle, indent=2, default=str))

    return bundle
