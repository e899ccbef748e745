"""Concurrency utilities for Berth."""

from berth.concurrency.locks import KeyedLock

__all__ = ["KeyedLock"]
