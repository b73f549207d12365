"""Installer telemetry reporting and migration of legacy telemetry data."""
