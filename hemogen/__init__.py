"""
hemogen - synthetic hemogram generator.

Produces CBC lab records with controlled outbreak anomalies and forwards
them as FHIR bundles to an ingestion endpoint.
"""

__version__ = "0.1.0"
