"""Deferred post-booking tasks: status store, task contract, orchestrator and diagnostics"""
