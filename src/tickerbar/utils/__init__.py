"""Shared helpers that carry no engine state."""
