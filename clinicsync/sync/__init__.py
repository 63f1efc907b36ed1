"""Encrypted sync, backup and restore. Entry point: clinicsync.sync.engine.build_engine."""
