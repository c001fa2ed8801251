from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


DEFAULT_BASE_URL = "https://live.trading212.com/api/v0"


class SyncSettings(BaseModel):
    base_url: str = Field(default_factory=lambda: (os.environ.get("TRADING212_BASE_URL") or DEFAULT_BASE_URL).strip())
    request_timeout_s: float = 120.0
    # Export polling: the job usually finishes fast, but status GETs are rate limited after the first one.
    initial_delay_s: float = 10.0
    poll_interval_s: float = 60.0
    max_attempts: int = 10
    export_request_interval_s: float = 30.0
    incremental_overlap_days: int = 7
    default_currency: str = "EUR"
    skipped_actions: list[str] = Field(default_factory=list)
    source: str = "trading212"
    institution_name: str = "Trading 212"
    institution_domain: str = "trading212.com"
    institution_url: str = "https://www.trading212.com"
    cash_account_name: str = "Trading 212 Cash"
    investment_account_name: str = "Trading 212 Invest"


def _candidate_paths() -> list[Path]:
    paths = [Path("ledgersync.yaml")]
    home = Path(os.path.expanduser("~"))
    paths.append(home / ".ledgersync" / "ledgersync.yaml")
    return paths


def load_sync_settings() -> tuple[SyncSettings, Optional[str]]:
    """
    Load sync settings from YAML (if present), under a top-level `sync:` key.

    Search paths (first match wins):
      - ./ledgersync.yaml
      - ~/.ledgersync/ledgersync.yaml
    """
    for p in _candidate_paths():
        if p.exists():
            data = yaml.safe_load(p.read_text()) or {}
            return SyncSettings.model_validate(data.get("sync") or data), str(p)
    return SyncSettings(), None
