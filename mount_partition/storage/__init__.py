"""Partition location, loop device, mount table and detach operations."""
