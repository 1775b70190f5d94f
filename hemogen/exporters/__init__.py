"""
Export functionality for hemogen.
"""

from .json_export import export_json, export_json_summary
from .fhir import export_to_fhir as export_fhir, FHIRExporter

__all__ = [
    "export_json",
    "export_json_summary",
    "export_fhir",
    "FHIRExporter",
]
