"""Nightscout sync pipeline.

Modules:
    coordinator  — Single-flight sync runs, rerun-on-change, settings reactions
    readings     — Paginated glucose reading upload with spacing filter
    calibrations — Calibration upload (cal + mbg entries)
    status       — Battery status and sensor start upload
    treatments   — Two-way treatment sync
    reconcile    — Matching and merge rules for treatments
"""
