"""Shared types for profilesync.

This module defines enums used by the sync pipeline, the scheduler and the CLI.
"""

from __future__ import annotations

from enum import Enum


class SyncStage(str, Enum):
    """Stage of a sync run.

    Reported through the engine's progress callback and stored on
    the run result so callers can tell where a failed run stopped.
    """

    IDLE = "idle"
    COLLECTING_DATA = "collecting_data"
    DOWNLOADING = "downloading"
    DECRYPTING = "decrypting"
    MERGING = "merging"
    RESOLVING_CONFLICTS = "resolving_conflicts"
    APPLYING_CHANGES = "applying_changes"
    ENCRYPTING = "encrypting"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class PassphraseStrength(str, Enum):
    """Strength level of a sync passphrase."""

    WEAK = "weak"
    FAIR = "fair"
    GOOD = "good"
    STRONG = "strong"
    VERY_STRONG = "very_strong"
