"""Durable memory record store."""
