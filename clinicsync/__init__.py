"""ClinicSync: offline-first encrypted sync and backup for clinic data."""

__version__ = "0.1.0"
