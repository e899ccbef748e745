"""Validation utilities for Berth."""

from berth.validators.path import validate_workspace_path

__all__ = ["validate_workspace_path"]
