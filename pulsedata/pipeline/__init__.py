"""Normalize, partition, write and catalog dataset trees."""
