"""
Background scheduling: paced generation cycles and the delivery retry sweep.
"""

from .controller import CycleController, CycleResult, RetrySweep, Scheduler

__all__ = [
  "CycleController",
  "CycleResult",
  "RetrySweep",
  "Scheduler",
]
