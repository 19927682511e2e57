"""Consistency engine and its concurrency primitives."""
