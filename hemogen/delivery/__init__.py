"""
Delivery of stored records to the external ingestion endpoint.
"""

from .pipeline import (
    DeliveryError,
    DeliveryPipeline,
    JSON_HEADERS,
    is_success,
    partition,
)

__all__ = [
    "DeliveryError",
    "DeliveryPipeline",
    "JSON_HEADERS",
    "is_success",
    "partition",
]
