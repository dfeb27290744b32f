"""Scan client core: owned state, log buffer, orchestration state machine."""
