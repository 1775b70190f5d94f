"""
Supabase connection for hemogen.

Reads the connection settings from the environment and lazily creates the
singleton Supabase client the record repository queries.
"""

import os
from typing import Optional

from supabase import Client, create_client


class SupabaseConfig:
  """Connection settings read from the environment."""

  def __init__(self):
    self.url = os.environ.get("SUPABASE_URL")
    self.service_key = os.environ.get("SUPABASE_SERVICE_KEY")

  @property
  def is_configured(self) -> bool:
    """Check if Supabase is properly configured."""
    return bool(self.url and self.service_key)

  def validate(self) -> None:
    """Raise error if not properly configured."""
    if not self.url:
      raise ValueError("SUPABASE_URL environment variable not set")
    if not self.service_key:
      raise ValueError("SUPABASE_SERVICE_KEY environment variable not set")


# -----------------------------------------------------------------------------
# Singleton instances
# -----------------------------------------------------------------------------

_client: Optional[Client] = None
_config: Optional[SupabaseConfig] = None


def get_config() -> SupabaseConfig:
  """Get the Supabase configuration (singleton)."""
  global _config
  if _config is None:
    _config = SupabaseConfig()
  return _config


def get_client() -> Client:
  """
  Get the Supabase client (singleton).

  Uses the service_role key: the generator is a background service with no
  end-user session.
  """
  global _client
  if _client is None:
    config = get_config()
    config.validate()
    _client = create_client(config.url, config.service_key)
  return _client


def is_configured() -> bool:
  """Check if Supabase is configured without raising errors."""
  return get_config().is_configured


def reset_clients() -> None:
  """Reset client singletons (useful for testing)."""
  global _client, _config
  _client = None
  _config = None
