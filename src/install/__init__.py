"""Acquisition pipeline, linker and install orchestration."""
