"""Admission webhook that injects mount sidecars into pods."""
