"""Booking domain: commit gate, appointment lookup and background task diagnostics"""
