"""
Configuration for the hemogram generator.

All settings are immutable once loaded. A single AppConfig is built at
startup and handed to each component's constructor.
"""

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


DEFAULT_OUTBREAK_LOCATION = "Trindade|GO"
DEFAULT_NORMAL_LOCATION = "Sao Paulo|SP"


class ConfigError(ValueError):
  """Raised when configuration cannot be loaded or fails validation."""


class _Frozen(BaseModel):
  model_config = ConfigDict(frozen=True, extra="forbid")


class ClinicalThresholds(_Frozen):
  """
  Clinical cut-offs used by the downstream detector, in cells/uL.

  The anomalous ranges are what the sampler draws from when a record must
  cross a threshold, so each one has to sit entirely above its cut-off.
  """

  leucocytosis: float = 11000.0
  neutrophilia: float = 7500.0
  left_shift: float = 500.0
  leucocytosis_range: tuple[float, float] = (12000.0, 30000.0)
  neutrophilia_range: tuple[float, float] = (8000.0, 25000.0)
  left_shift_range: tuple[float, float] = (600.0, 2000.0)

  @model_validator(mode="after")
  def _ranges_above_thresholds(self):
    checks = (
      ("leucocytosis_range", self.leucocytosis_range, self.leucocytosis),
      ("neutrophilia_range", self.neutrophilia_range, self.neutrophilia),
      ("left_shift_range", self.left_shift_range, self.left_shift),
    )
    for name, (low, high), threshold in checks:
      if low > high:
        raise ValueError(f"{name} is not ordered: [{low}, {high}]")
      # Sampled values are rounded to two decimals
      if round(low, 2) <= threshold:
        raise ValueError(f"{name} must start above its threshold {threshold}, got {low}")
    return self


class AnomalyConfig(_Frozen):
  """Anomaly injection settings (rates, locations, burst shape)."""

  enabled: bool = True
  probability: float = Field(0.25, ge=0.0, le=1.0)
  severe_ratio: float = Field(0.30, ge=0.0, le=1.0)
  # Share of anomalies classified as isolated leucocytosis. Zero keeps the
  # two-category behaviour (severe vs suspected).
  leucocytosis_ratio: float = Field(0.0, ge=0.0, le=1.0)
  outbreak_bias: float = Field(0.7, ge=0.0, le=1.0)
  outbreak_locations: tuple[str, ...] = (DEFAULT_OUTBREAK_LOCATION, "Goiania|GO")
  normal_locations: tuple[str, ...] = (
    DEFAULT_NORMAL_LOCATION,
    "Rio de Janeiro|RJ",
    "Belo Horizonte|MG",
    "Curitiba|PR",
    "Porto Alegre|RS",
    "Salvador|BA",
    "Brasilia|DF",
  )
  burst_probability: float = Field(0.20, ge=0.0, le=1.0)
  burst_anomaly_rate: float = Field(0.80, ge=0.0, le=1.0)
  burst_size_multiplier: float = Field(3.0, ge=1.0)
  detection_lag_days: int = Field(2, ge=0)
  thresholds: ClinicalThresholds = Field(default_factory=ClinicalThresholds)

  @model_validator(mode="after")
  def _ratios_fit(self):
    if self.severe_ratio + self.leucocytosis_ratio > 1.0:
      raise ValueError("severe_ratio + leucocytosis_ratio must not exceed 1.0")
    return self

  @property
  def all_locations(self) -> tuple[str, ...]:
    """Normal locations followed by outbreak locations."""
    return self.normal_locations + self.outbreak_locations


class HistoricalConfig(_Frozen):
  """Baseline backfill settings."""

  days: int = Field(90, ge=1)
  daily_count: int = Field(50, ge=1)
  anomaly_rate: float = Field(0.05, ge=0.0, le=1.0)
  min_per_location: int = Field(5, ge=1)
  outbreak_count: int = Field(100, ge=0)
  inject_outbreak: bool = True

  @property
  def min_existing_records(self) -> int:
    """Stored record count under which the backfill runs at startup."""
    return self.days * self.daily_count // 2


class SchedulerConfig(_Frozen):
  """Generation cycle and retry sweep timing."""

  enabled: bool = True
  initial_delay_seconds: float = Field(60.0, ge=0.0)
  min_interval_minutes: int = Field(3, ge=0)
  max_interval_minutes: int = Field(10, ge=0)
  min_batch_size: int = Field(20, ge=1)
  max_batch_size: int = Field(100, ge=1)
  failure_backoff_seconds: float = Field(60.0, ge=0.0)
  retry_sweep_minutes: float = Field(5.0, gt=0.0)
  max_tick_seconds: float = Field(30.0, gt=0.0)

  @model_validator(mode="after")
  def _bounds_ordered(self):
    if self.min_interval_minutes > self.max_interval_minutes:
      raise ValueError("min_interval_minutes must be <= max_interval_minutes")
    if self.min_batch_size > self.max_batch_size:
      raise ValueError("min_batch_size must be <= max_batch_size")
    return self


class SinkConfig(_Frozen):
  """External ingestion endpoint and delivery pool settings."""

  url: str = "http://localhost:5000/api/ingestion/fhir"
  timeout_seconds: float = Field(30.0, gt=0.0)
  pool_size: int = Field(10, ge=1)
  batch_size: int = Field(50, ge=1)
  batch_delay_seconds: float = Field(0.1, ge=0.0)
  shutdown_grace_seconds: float = Field(30.0, ge=0.0)


class StorageConfig(_Frozen):
  """Record store backend selection."""

  backend: Literal["memory", "supabase"] = "memory"
  table: str = "lab_records"


class AppConfig(_Frozen):
  """Top-level configuration aggregate."""

  anomaly: AnomalyConfig = Field(default_factory=AnomalyConfig)
  historical: HistoricalConfig = Field(default_factory=HistoricalConfig)
  scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
  sink: SinkConfig = Field(default_factory=SinkConfig)
  storage: StorageConfig = Field(default_factory=StorageConfig)


def _env_overrides(data: dict) -> dict:
  """Apply environment variable overrides on top of file data."""
  sink_url = os.environ.get("HEMOGEN_SINK_URL")
  if sink_url:
    data.setdefault("sink", {})["url"] = sink_url
  backend = os.environ.get("HEMOGEN_STORAGE_BACKEND")
  if backend:
    data.setdefault("storage", {})["backend"] = backend
  return data


def load_config(path: Optional[str | Path] = None) -> AppConfig:
  """
  Load configuration from YAML.

  Args:
    path: Explicit config file. Falls back to $HEMOGEN_CONFIG, then to
      the built-in defaults when neither is set.

  Raises:
    ConfigError: if the file is missing, unparsable, or invalid.
  """
  path = path or os.environ.get("HEMOGEN_CONFIG")
  data: dict = {}

  if path:
    config_path = Path(path)
    if not config_path.exists():
      raise ConfigError(f"Config file not found: {config_path}")
    try:
      with open(config_path, "r") as f:
        data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
      raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(data, dict):
      raise ConfigError(f"Config root must be a mapping, got {type(data).__name__}")

  try:
    return AppConfig.model_validate(_env_overrides(data))
  except ValidationError as e:
    raise ConfigError(str(e)) from e
