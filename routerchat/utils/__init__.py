"""Utility helpers for routerchat."""
