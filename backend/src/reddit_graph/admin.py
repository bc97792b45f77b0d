"""Admin switches stored in service_settings.

Read once at the start of every run; changes made while a run is in flight
apply to the next one.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from .config import Settings, settings as default_settings
from .models import ServiceSetting, utc_now


logger = logging.getLogger(__name__)

PRECALC_ENABLED = "precalc_enabled"
PRECALC_MODE = "precalc_mode"
PRECALC_INTERVAL = "precalc_interval_seconds"

KNOWN_KEYS = (PRECALC_ENABLED, PRECALC_MODE, PRECALC_INTERVAL)
MODES = ("incremental", "full")

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class AdminSwitches:
    """Effective switches for one run."""
    enabled: bool
    full_rebuild: bool
    interval_seconds: int
    mode_corrupt: bool = False


def get_setting(db: Session, key: str) -> Optional[str]:
    row = db.get(ServiceSetting, key)
    return row.value if row else None


def set_setting(db: Session, key: str, value: str) -> ServiceSetting:
    """Create or update a switch and commit."""
    row = db.get(ServiceSetting, key)
    if row is None:
        row = ServiceSetting(key=key, value=value)
        db.add(row)
    else:
        row.value = value
        row.updated_at = utc_now()
    db.commit()
    return row


def parse_bool(raw: str) -> Optional[bool]:
    value = raw.strip().lower()
    if value in TRUE_VALUES:
        return True
    if value in FALSE_VALUES:
        return False
    return None


def read_admin_switches(db: Session, settings: Settings = None) -> AdminSwitches:
    """Resolve the switches for a run, falling back to Settings defaults.

    An unreadable mode fails closed into a full rebuild.
    """
    settings = settings or default_settings

    enabled = settings.precalc_enabled
    raw_enabled = get_setting(db, PRECALC_ENABLED)
    if raw_enabled is not None:
        parsed = parse_bool(raw_enabled)
        if parsed is None:
            logger.warning(f"Ignoring unreadable {PRECALC_ENABLED}={raw_enabled!r}")
        else:
            enabled = parsed

    full_rebuild = False
    mode_corrupt = False
    raw_mode = get_setting(db, PRECALC_MODE)
    if raw_mode is not None:
        mode = raw_mode.strip().lower()
        if mode not in MODES:
            logger.warning(f"Unknown {PRECALC_MODE}={raw_mode!r}, forcing full rebuild")
            mode_corrupt = True
            full_rebuild = True
        else:
            full_rebuild = mode == "full"

    interval = settings.precalc_interval_seconds
    raw_interval = get_setting(db, PRECALC_INTERVAL)
    if raw_interval is not None:
        try:
            interval = max(1, int(raw_interval))
        except ValueError:
            logger.warning(f"Ignoring unreadable {PRECALC_INTERVAL}={raw_interval!r}")

    return AdminSwitches(
        enabled=enabled,
        full_rebuild=full_rebuild,
        interval_seconds=interval,
        mode_corrupt=mode_corrupt,
    )
