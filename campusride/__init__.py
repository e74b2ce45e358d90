"""Ride matching and lifecycle core for the campus ride-sharing service."""
