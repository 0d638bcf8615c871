"""Bed control application.

This package contains the bed registry, the assignment engine, census
aggregation, length-of-stay prediction and availability forecasting,
together with the ADT adapter and the HTTP query surface built on them.
"""
