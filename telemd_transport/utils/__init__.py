"""Reliability helpers."""
