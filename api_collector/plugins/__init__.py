"""Concrete collection jobs built on the collector engine."""
