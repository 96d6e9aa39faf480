"""
cert-renewal — certificate renewal workflow engine.

Loads per-certificate-type fee schedules, drives the renewal intake state
machine, validates and uploads evidence files, and persists renewal
applications with compensating cleanup on partial failure.
"""

__version__ = "0.1.0"
