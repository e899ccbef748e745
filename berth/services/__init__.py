"""Berth services layer."""
